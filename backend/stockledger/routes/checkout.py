# backend/stockledger/routes/checkout.py
"""
Checkout routes.

Customer identity is resolved upstream; the caller passes user_id.
Prices are always computed server-side; any client price is ignored.
"""
from flask import Blueprint, g, request

from ..decorators import engine_errors, require_actor
from ..validation import coerce_int, coerce_optional_str, parse_items, require_fields, require_json_object


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("/orders")
@engine_errors
def create_order_route():
    """
    Create an order.

    Body: {user_id, items: [{product_id, quantity}], shipping_address,
           payment_method, coupon_code?, warehouse_id?}
    """
    payload = require_json_object(request.get_json(silent=True))
    require_fields(payload, "user_id", "items", "shipping_address", "payment_method")

    items = parse_items(payload.get("items"))
    warehouse_id = coerce_int(payload.get("warehouse_id"), "warehouse_id", minimum=1, allow_none=True)

    from ..services.order_service import create_order

    order = create_order(
        user_id=str(payload["user_id"]),
        items=items,
        address=payload.get("shipping_address"),
        payment_method=payload.get("payment_method"),
        coupon_code=coerce_optional_str(payload.get("coupon_code"), "coupon_code", max_length=64),
        warehouse_id=warehouse_id,
    )
    return {
        "order_id": order.id,
        "total_cents": order.total_cents,
        "gateway_order_id": order.gateway_order_id,
        "currency": order.currency,
        "order": order.to_dict(),
    }, 201


@checkout_bp.post("/verify-payment")
@require_actor
@engine_errors
def verify_payment_route():
    """
    Confirm a gateway payment.

    Body: {order_id, payment_id, signature}. Repeating a successful
    confirmation returns 200 with already_processed=true.
    """
    payload = require_json_object(request.get_json(silent=True))
    require_fields(payload, "order_id", "payment_id", "signature")
    order_id = coerce_int(payload.get("order_id"), "order_id", minimum=1)

    from ..services.order_service import confirm_payment

    result = confirm_payment(
        order_id,
        str(payload["payment_id"]),
        str(payload["signature"]),
        actor=g.actor,
    )
    return {
        "success": True,
        "already_processed": result.already_processed,
        "order": result.order.to_dict(),
    }, 200
