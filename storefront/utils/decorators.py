# ------- storefront/utils/decorators.py -------
from functools import wraps
from flask import jsonify
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from ..extensions import db
from ..utils.api import api_error
from ..model import Store, User

ROLE_LEVEL = {"user": 1, "admin": 2}


def _current_user():
    verify_jwt_in_request()
    uid = get_jwt_identity()
    try:
        uid = int(uid)
    except (TypeError, ValueError):
        uid = None
    return db.session.get(User, uid) if uid else None


def role_required(*roles, message: str | None = None):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            u = _current_user()
            if not u:
                return jsonify(api_error("Unauthorized")), 401
            if u.role not in roles:
                return jsonify(api_error(message or "Forbidden")), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def store_access_required(fn):
    """Caller must own the store named by the `store_id` view arg (admins pass).

    The resolved user and store are handed to the view as `user` and `store`.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        u = _current_user()
        if not u:
            return jsonify(api_error("Unauthorized")), 401
        store = db.session.get(Store, kwargs.get("store_id"))
        if not store:
            return jsonify(api_error("store not found")), 404
        if store.owner_id != u.id and ROLE_LEVEL.get(u.role, 0) < ROLE_LEVEL["admin"]:
            return jsonify(api_error("You do not have access to this store")), 403
        return fn(*args, user=u, store=store, **kwargs)
    return wrapper
