# backend/stockledger/routes/purchase_orders.py
"""
Purchase order routes: DRAFT -> RECEIVED | CANCELLED.
"""
from flask import Blueprint, g, request

from ..decorators import engine_errors, require_actor
from ..exceptions import ValidationError
from ..models import PurchaseOrderStatus
from ..validation import coerce_int, coerce_optional_str, parse_items, require_fields, require_json_object


purchase_orders_bp = Blueprint("purchase_orders", __name__, url_prefix="/api/purchase-orders")


@purchase_orders_bp.post("")
@require_actor
@engine_errors
def create_route():
    """
    Body: {supplier_name, warehouse_id, items: [{product_id, quantity, unit_cost_cents?}]}
    """
    payload = require_json_object(request.get_json(silent=True))
    require_fields(payload, "supplier_name", "warehouse_id", "items")

    from ..services.purchase_order_service import create_purchase_order

    po = create_purchase_order(
        str(payload["supplier_name"]),
        coerce_int(payload.get("warehouse_id"), "warehouse_id", minimum=1),
        parse_items(payload.get("items"), extra_int_fields=("unit_cost_cents",)),
        actor=g.actor,
    )
    return {"purchase_order": po.to_dict()}, 201


@purchase_orders_bp.get("")
@engine_errors
def list_route():
    status = request.args.get("status")
    if status:
        try:
            status = PurchaseOrderStatus(status.strip().upper())
        except ValueError:
            raise ValidationError(f"Unknown purchase order status: {status}")

    from ..services.purchase_order_service import list_purchase_orders

    rows = list_purchase_orders(
        warehouse_id=request.args.get("warehouse_id", type=int),
        status=status or None,
        limit=min(request.args.get("limit", default=100, type=int), 500),
    )
    return {"purchase_orders": [po.to_dict() for po in rows]}, 200


@purchase_orders_bp.get("/<int:po_id>")
@engine_errors
def get_route(po_id: int):
    from ..services.purchase_order_service import get_purchase_order

    return {"purchase_order": get_purchase_order(po_id).to_dict()}, 200


@purchase_orders_bp.post("/<int:po_id>/receive")
@require_actor
@engine_errors
def receive_route(po_id: int):
    from ..services.purchase_order_service import receive_purchase_order

    result = receive_purchase_order(po_id, actor=g.actor)
    return {
        "already_processed": result.already_processed,
        "purchase_order": result.purchase_order.to_dict(),
    }, 200


@purchase_orders_bp.post("/<int:po_id>/cancel")
@require_actor
@engine_errors
def cancel_route(po_id: int):
    payload = require_json_object(request.get_json(silent=True))

    from ..services.purchase_order_service import cancel_purchase_order

    po = cancel_purchase_order(
        po_id,
        actor=g.actor,
        reason=coerce_optional_str(payload.get("reason"), "reason"),
    )
    return {"purchase_order": po.to_dict()}, 200
