# backend/stockledger/routes/orders.py
"""
Order administration routes.

Status changes are audited under the acting identity (X-Actor).
"""
from flask import Blueprint, g, request

from ..decorators import engine_errors, require_actor
from ..validation import coerce_int, require_fields, require_json_object


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("")
@engine_errors
def list_orders_route():
    from ..services.order_service import coerce_status, list_orders

    status = request.args.get("status")
    rows = list_orders(
        user_id=request.args.get("user_id"),
        status=coerce_status(status) if status else None,
        warehouse_id=request.args.get("warehouse_id", type=int),
        limit=min(request.args.get("limit", default=100, type=int), 500),
        offset=request.args.get("offset", default=0, type=int),
    )
    return {"orders": [o.to_dict() for o in rows]}, 200


@orders_bp.get("/<int:order_id>")
@engine_errors
def get_order_route(order_id: int):
    from ..services.order_service import get_order

    return {"order": get_order(order_id).to_dict()}, 200


@orders_bp.post("/<int:order_id>/status")
@require_actor
@engine_errors
def update_status_route(order_id: int):
    """
    Body: {status, metadata?}
    """
    payload = require_json_object(request.get_json(silent=True))
    require_fields(payload, "status")
    metadata = payload.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return {"error": "metadata must be an object", "code": "VALIDATION_ERROR"}, 400

    from ..services.order_service import update_status

    order = update_status(order_id, payload["status"], actor=g.actor, metadata=metadata)
    return {"order": order.to_dict()}, 200


@orders_bp.post("/<int:order_id>/cod-confirm")
@require_actor
@engine_errors
def cod_confirm_route(order_id: int):
    from ..services.order_service import confirm_cod_order

    result = confirm_cod_order(order_id, actor=g.actor)
    return {"already_processed": result.already_processed, "order": result.order.to_dict()}, 200


@orders_bp.post("/<int:order_id>/cod-complete")
@require_actor
@engine_errors
def cod_complete_route(order_id: int):
    from ..services.order_service import complete_cod_order

    order = complete_cod_order(order_id, actor=g.actor)
    return {"order": order.to_dict()}, 200


@orders_bp.post("/quote")
@engine_errors
def quote_route():
    """
    Price a subtotal with the current settings and an optional coupon,
    without creating anything.

    Body: {subtotal_cents, coupon_code?}
    """
    payload = require_json_object(request.get_json(silent=True))
    require_fields(payload, "subtotal_cents")
    subtotal = coerce_int(payload.get("subtotal_cents"), "subtotal_cents", minimum=0)

    from ..services.coupon_service import find_coupon, normalize_code
    from ..services.order_service import quote_order

    code = normalize_code(payload.get("coupon_code"))
    quote = quote_order(subtotal, coupon=find_coupon(code), coupon_code=code)
    return {
        "subtotal_cents": quote.subtotal_cents,
        "tax_cents": quote.tax_cents,
        "delivery_fee_cents": quote.delivery_fee_cents,
        "discount_cents": quote.discount_cents,
        "total_cents": quote.total_cents,
        "currency": quote.currency,
        "coupon_code": quote.coupon_code,
        "coupon_reason": quote.coupon_reason,
    }, 200
