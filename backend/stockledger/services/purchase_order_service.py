# Overview: Service-layer operations for supplier purchase orders; receipt posts stock with an audit trail.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..exceptions import InvalidTransitionError, NotFoundError, ValidationError
from ..extensions import db
from ..models import (
    AuditAction,
    Product,
    PurchaseOrder,
    PurchaseOrderLine,
    PurchaseOrderStatus,
    StockAdjustmentReason,
    Warehouse,
)
from ..time_utils import utcnow
from .audit_service import log_admin_action
from .concurrency import begin_write, lock_for_update, run_with_retry
from .inventory_service import _increment_inner, normalize_items


@dataclass
class ReceiptResult:
    purchase_order: PurchaseOrder
    already_processed: bool = False


def _po_number(po_id: int) -> str:
    return f"PO-{po_id:06d}"


def get_purchase_order(po_id: int, *, lock: bool = False) -> PurchaseOrder:
    q = db.session.query(PurchaseOrder).filter(PurchaseOrder.id == po_id)
    if lock:
        q = lock_for_update(q)
    po = q.first()
    if po is None:
        raise NotFoundError(f"Purchase order {po_id} not found", purchase_order_id=po_id)
    return po


def list_purchase_orders(
    *,
    warehouse_id: int | None = None,
    status: PurchaseOrderStatus | None = None,
    limit: int = 100,
) -> list[PurchaseOrder]:
    q = db.session.query(PurchaseOrder)
    if warehouse_id is not None:
        q = q.filter(PurchaseOrder.warehouse_id == warehouse_id)
    if status is not None:
        q = q.filter(PurchaseOrder.status == status)
    return q.order_by(PurchaseOrder.id.desc()).limit(limit).all()


def create_purchase_order(supplier_name: str, warehouse_id: int, items, *, actor: str) -> PurchaseOrder:
    """
    Create a DRAFT purchase order.

    items: [{product_id, quantity, unit_cost_cents?}, ...]. Duplicate
    products are merged; the first unit cost seen is kept.
    """
    supplier_name = (supplier_name or "").strip()
    if not supplier_name:
        raise ValidationError("supplier_name is required")

    merged = normalize_items(items)
    unit_costs: dict[int, int] = {}
    for raw in items:
        if not isinstance(raw, dict):
            continue
        product_id = raw.get("product_id")
        cost = raw.get("unit_cost_cents", 0) or 0
        if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0:
            raise ValidationError("unit_cost_cents must be a non-negative integer", product_id=product_id)
        unit_costs.setdefault(product_id, cost)

    def _op():
        begin_write()
        warehouse = db.session.get(Warehouse, warehouse_id)
        if warehouse is None:
            raise NotFoundError(f"Warehouse {warehouse_id} not found", warehouse_id=warehouse_id)

        po = PurchaseOrder(
            supplier_name=supplier_name,
            warehouse_id=warehouse.id,
            status=PurchaseOrderStatus.DRAFT,
            created_by=actor,
        )
        total = 0
        for item in merged:
            product = db.session.get(Product, item.product_id)
            if product is None:
                raise NotFoundError(f"Product {item.product_id} not found", product_id=item.product_id)
            cost = unit_costs.get(item.product_id, 0)
            po.lines.append(
                PurchaseOrderLine(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=item.quantity,
                    unit_cost_cents=cost,
                )
            )
            total += cost * item.quantity
        po.total_cost_cents = total

        db.session.add(po)
        db.session.flush()
        po.po_number = _po_number(po.id)
        db.session.commit()
        return po

    po = run_with_retry(_op)
    current_app.logger.info(
        "Purchase order %s created for warehouse %s by %s (%d line(s))",
        po.po_number, warehouse_id, actor, len(po.lines),
    )
    return po


def receive_purchase_order(po_id: int, *, actor: str) -> ReceiptResult:
    """
    Mark a DRAFT purchase order RECEIVED and restock every line.

    Receiving is idempotent on the purchase order itself: a RECEIVED order
    is returned unchanged with already_processed=True.
    """
    def _op():
        begin_write()
        po = get_purchase_order(po_id, lock=True)
        if po.status == PurchaseOrderStatus.RECEIVED:
            db.session.commit()
            return ReceiptResult(purchase_order=po, already_processed=True)
        if po.status != PurchaseOrderStatus.DRAFT:
            raise InvalidTransitionError(
                f"Cannot receive purchase order in status {po.status.value}",
                purchase_order_id=po.id,
                status=po.status.value,
            )
        if not po.lines:
            raise ValidationError("Purchase order has no lines", purchase_order_id=po.id)

        for line in po.lines:
            _increment_inner(
                po.warehouse_id,
                line.product_id,
                line.quantity,
                reason=StockAdjustmentReason.RESTOCK,
                actor=actor,
                reference=po.po_number,
                note=f"Received from {po.supplier_name}",
            )

        po.status = PurchaseOrderStatus.RECEIVED
        po.received_by = actor
        po.received_at = utcnow()

        log_admin_action(
            action=AuditAction.PURCHASE_ORDER_RECEIVE,
            performed_by=actor,
            target_type="PURCHASE_ORDER",
            target_id=po.id,
            details=f"Received {po.po_number} from {po.supplier_name}",
            metadata={
                "warehouse_id": po.warehouse_id,
                "lines": [{"product_id": l.product_id, "quantity": l.quantity} for l in po.lines],
            },
        )
        db.session.commit()
        return ReceiptResult(purchase_order=po)

    # IntegrityError: first stock record for a product created concurrently
    result = run_with_retry(_op, retry_on=(IntegrityError,))
    if not result.already_processed:
        current_app.logger.info("Purchase order %s received by %s", result.purchase_order.po_number, actor)
    return result


def cancel_purchase_order(po_id: int, *, actor: str, reason: str | None = None) -> PurchaseOrder:
    def _op():
        begin_write()
        po = get_purchase_order(po_id, lock=True)
        if po.status == PurchaseOrderStatus.CANCELLED:
            db.session.commit()
            return po
        if po.status != PurchaseOrderStatus.DRAFT:
            raise InvalidTransitionError(
                f"Cannot cancel purchase order in status {po.status.value}",
                purchase_order_id=po.id,
                status=po.status.value,
            )
        po.status = PurchaseOrderStatus.CANCELLED
        po.cancelled_by = actor
        po.cancelled_at = utcnow()
        po.cancellation_reason = reason
        db.session.commit()
        return po

    return run_with_retry(_op)
