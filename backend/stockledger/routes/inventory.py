# backend/stockledger/routes/inventory.py
"""
Inventory routes.

A missing warehouse_id addresses the central stock pool.
Writes require an acting identity (X-Actor) and are audited.
"""
from flask import Blueprint, g, request

from ..decorators import engine_errors, require_actor
from ..exceptions import ValidationError
from ..models import StockAdjustmentReason
from ..validation import (
    coerce_int,
    coerce_optional_str,
    parse_items,
    require_fields,
    require_json_object,
)


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _reason_arg(raw):
    if raw is None:
        return None
    try:
        return StockAdjustmentReason(str(raw).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown reason: {raw}")


@inventory_bp.get("/stock")
@engine_errors
def stock_route():
    """
    Stock for one product (product_id given) or a whole warehouse.
    """
    warehouse_id = request.args.get("warehouse_id", type=int)
    product_id = request.args.get("product_id", type=int)

    from ..services.inventory_service import get_stock, list_stock

    if product_id is not None:
        return {
            "warehouse_id": warehouse_id,
            "product_id": product_id,
            "stock": get_stock(warehouse_id, product_id),
        }, 200
    return {
        "warehouse_id": warehouse_id,
        "records": [r.to_dict() for r in list_stock(warehouse_id)],
    }, 200


@inventory_bp.post("/adjust")
@require_actor
@engine_errors
def adjust_route():
    """
    Body: {warehouse_id?, product_id, change, type: set|increment|decrement,
           reason?, note?, idempotency_key?}
    """
    payload = require_json_object(request.get_json(silent=True))
    require_fields(payload, "product_id", "change")

    warehouse_id = coerce_int(payload.get("warehouse_id"), "warehouse_id", minimum=1, allow_none=True)
    product_id = coerce_int(payload.get("product_id"), "product_id", minimum=1)
    change = coerce_int(payload.get("change"), "change")

    from ..services.inventory_service import adjust_stock

    result = adjust_stock(
        warehouse_id,
        product_id,
        change,
        adjustment_type=payload.get("type", "increment"),
        reason=payload.get("reason"),
        actor=g.actor,
        note=coerce_optional_str(payload.get("note"), "note"),
        idempotency_key=coerce_optional_str(payload.get("idempotency_key"), "idempotency_key", max_length=128),
    )
    return {
        "stock": result.stock,
        "movement": result.movement.to_dict() if result.movement else None,
        "already_processed": result.already_processed,
    }, 200


@inventory_bp.post("/transfers")
@require_actor
@engine_errors
def transfer_route():
    """
    Body: {source_warehouse_id, dest_warehouse_id, items, note?, idempotency_key?}
    """
    payload = require_json_object(request.get_json(silent=True))
    require_fields(payload, "source_warehouse_id", "dest_warehouse_id", "items")

    source_id = coerce_int(payload.get("source_warehouse_id"), "source_warehouse_id", minimum=1)
    dest_id = coerce_int(payload.get("dest_warehouse_id"), "dest_warehouse_id", minimum=1)
    items = parse_items(payload.get("items"))

    from ..services.inventory_service import transfer

    result = transfer(
        source_id,
        dest_id,
        items,
        actor=g.actor,
        idempotency_key=coerce_optional_str(payload.get("idempotency_key"), "idempotency_key", max_length=128),
        note=coerce_optional_str(payload.get("note"), "note"),
    )
    status = 200 if result.already_processed else 201
    return {"already_processed": result.already_processed, "transfer": result.transfer.to_dict()}, status


@inventory_bp.get("/movements")
@engine_errors
def movements_route():
    from ..services.inventory_service import list_movements

    rows = list_movements(
        warehouse_id=request.args.get("warehouse_id", type=int),
        product_id=request.args.get("product_id", type=int),
        reason=_reason_arg(request.args.get("reason")),
        reference=request.args.get("reference"),
        central=request.args.get("central", "").lower() in ("1", "true", "yes"),
        limit=min(request.args.get("limit", default=200, type=int), 1000),
        offset=request.args.get("offset", default=0, type=int),
    )
    return {"movements": [m.to_dict() for m in rows]}, 200


@inventory_bp.get("/reconcile")
@engine_errors
def reconcile_route():
    product_id = request.args.get("product_id", type=int)
    if product_id is None:
        return {"error": "product_id is required", "code": "VALIDATION_ERROR"}, 400

    from ..services.inventory_service import reconcile_stock

    return reconcile_stock(request.args.get("warehouse_id", type=int), product_id), 200
