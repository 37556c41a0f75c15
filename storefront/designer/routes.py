# storefront/designer/routes.py
from datetime import timedelta

from flask import current_app, request

from . import bp
from ..utils.api import ok, err
from ..utils.decorators import store_access_required
from ..services import design_service, token_ledger
from ..services.model_client import DesignerSettings, OpenRouterClient


def _pipeline() -> design_service.DesignPipeline:
    settings = DesignerSettings.from_config(current_app.config)
    # tests register a fake client here
    client = current_app.extensions.get("design_model_client") or OpenRouterClient(settings)
    return design_service.DesignPipeline(settings, client)


@bp.get("/<uuid:store_id>/balance")
@store_access_required
def balance(store_id, user, store):
    ttl = timedelta(hours=current_app.config.get("PENDING_PURCHASE_TTL_HOURS", 24))
    return ok("OK", token_ledger.get_balance(store.id, pending_ttl=ttl).as_api())


@bp.post("/<uuid:store_id>/chat")
@store_access_required
def chat(store_id, user, store):
    data = request.get_json(silent=True) or {}
    result = _pipeline().generate(store.id, user.id, data.get("messages"))
    return ok("OK", result.as_api())


@bp.post("/<uuid:store_id>/generate")
@store_access_required
def generate(store_id, user, store):
    data = request.get_json(silent=True) or {}
    prompt = (data.get("prompt") or "").strip()
    if not prompt:
        return err("prompt is required", 400)
    result = _pipeline().generate(store.id, user.id, [{"role": "user", "content": prompt}])
    return ok("OK", result.as_api())


@bp.post("/<uuid:store_id>/apply")
@store_access_required
def apply(store_id, user, store):
    data = request.get_json(silent=True) or {}
    state, blocked = design_service.apply_design(
        store.id, history_id=data.get("history_id"), design=data.get("design"))
    return ok("Design applied to your live store", {
        "state": state.as_api(),
        "css_sanitized": bool(blocked),
        "blocked": blocked,
    })


@bp.post("/<uuid:store_id>/reset")
@store_access_required
def reset(store_id, user, store):
    design_service.reset_design(store.id)
    return ok("Store design reset to platform default")


@bp.post("/<uuid:store_id>/rollback")
@store_access_required
def rollback(store_id, user, store):
    data = request.get_json(silent=True) or {}
    if data.get("version") is None:
        return err("version is required", 400)
    state = design_service.rollback_design(store.id, data.get("version"))
    return ok(f"Rolled back to version {data.get('version')}", {"state": state.as_api()})


@bp.get("/<uuid:store_id>/history")
@store_access_required
def history(store_id, user, store):
    try:
        limit = int(request.args.get("limit", 20))
    except ValueError:
        return err("limit must be an integer", 400)
    entries = design_service.list_history(store.id, limit=limit)
    return ok("OK", {"history": [e.as_api() for e in entries]})


@bp.get("/<uuid:store_id>/state")
@store_access_required
def state(store_id, user, store):
    return ok("OK", design_service.get_design_state(store.id))
