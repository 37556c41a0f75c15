# --- storefront/__init__.py ---
from flask import Flask, jsonify

from .config import Config, TestConfig, logger
from .extensions import db, jwt, cors, migrate


def create_app(config_overrides=None):
    app = Flask(__name__, instance_relative_config=True)

    overrides = dict(config_overrides or {})
    config_cls = TestConfig if overrides.get("TESTING") else Config
    app.config.from_object(config_cls)
    config_cls.init_app(app)
    app.config.update(overrides)

    # Init extensions
    db.init_app(app)
    jwt.init_app(app)
    cors.init_app(app, resources={r"/*": {"origins": "*"}})
    migrate.init_app(app, db)

    # Register blueprints
    from .auth import bp as auth_bp; app.register_blueprint(auth_bp)
    from .discount import bp as discount_bp; app.register_blueprint(discount_bp)
    from .designer import bp as designer_bp; app.register_blueprint(designer_bp)
    from .tokens import bp as tokens_bp; app.register_blueprint(tokens_bp)

    from .errors import register_error_handlers
    register_error_handlers(app)

    from .cli import register_cli
    register_cli(app)

    @app.get("/")
    def health():
        return jsonify(ok=True, msg="API running")

    with app.app_context():
        from . import model  # noqa: F401  (register tables)
        db.create_all()

    logger.debug(f"app created with blueprints: {sorted(app.blueprints)}")
    return app
