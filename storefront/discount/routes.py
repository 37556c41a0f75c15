# storefront/discount/routes.py
from flask import request, jsonify

from . import bp
from ..utils.api import api_ok, api_error
from ..utils.decorators import store_access_required
from ..services import discount_service


@bp.post("/validate")
def validate_auto_discount():
    """Checkout: best automatic discount for a cart. Public."""
    data = request.get_json(silent=True) or {}
    result = discount_service.evaluate_auto_discount(data)
    msg = "Discount applied" if result.applicable else "No automatic discount applies"
    return jsonify(api_ok(msg, data=result.as_api())), 200


@bp.get("/<uuid:store_id>/rules")
@store_access_required
def list_rules(store_id, user, store):
    rules = discount_service.list_rules(store.id)
    return jsonify(api_ok("OK", data={"rules": [r.as_api() for r in rules]})), 200


@bp.post("/<uuid:store_id>/rules")
@store_access_required
def create_rule(store_id, user, store):
    data = request.get_json(silent=True) or {}
    rule = discount_service.create_rule(store.id, data)
    return jsonify(api_ok("Discount rule created", data={"rule": rule.as_api()})), 201


@bp.patch("/<uuid:store_id>/rules/<rule_id>/status")
@store_access_required
def set_rule_status(store_id, rule_id, user, store):
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        return jsonify(api_error("status is required")), 400
    rule = discount_service.set_rule_status(store.id, rule_id, data["status"])
    return jsonify(api_ok("Discount rule updated", data={"rule": rule.as_api()})), 200


@bp.delete("/<uuid:store_id>/rules/<rule_id>")
@store_access_required
def delete_rule(store_id, rule_id, user, store):
    discount_service.delete_rule(store.id, rule_id)
    return jsonify(api_ok("Discount rule deleted")), 200


@bp.get("/<uuid:store_id>/stats")
@store_access_required
def rule_stats(store_id, user, store):
    return jsonify(api_ok("OK", data=discount_service.rule_stats(store.id))), 200
