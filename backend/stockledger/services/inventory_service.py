# Overview: Service-layer operations for inventory; per-warehouse stock counters with an append-only movement log.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..exceptions import (
    InsufficientStockError,
    NegativeStockError,
    NotFoundError,
    SameWarehouseError,
    ValidationError,
)
from ..extensions import db
from ..models import (
    AuditAction,
    Product,
    StockAdjustmentReason,
    StockAdjustmentType,
    StockMovement,
    StockRecord,
    StockTransfer,
    Warehouse,
)
from .audit_service import log_admin_action
from .concurrency import begin_write, lock_for_update, run_with_retry
"""
Inventory Invariants (authoritative)

Stock model:
- One StockRecord per (warehouse, product); warehouse_id NULL is the central pool.
- A missing record means zero stock.
- stock never goes negative (engine check plus a DB check constraint).

Movement log:
- Every stock change appends exactly one StockMovement in the same transaction.
- Movements are never updated or deleted.
- SUM(change) over a key's movements equals the record's stock.

Multi-item operations (order decrement, transfer):
- All items are read and checked under lock before any write.
- If any item is short, nothing is written (all-or-nothing).
- Races are caught by the record's version_id; the losing transaction is
  retried from scratch and re-checks stock.
"""


DEFAULT_ACTOR = "system"


@dataclass
class StockItem:
    product_id: int
    quantity: int


@dataclass
class TransferResult:
    transfer: StockTransfer
    already_processed: bool = False


@dataclass
class AdjustmentResult:
    movement: StockMovement | None
    stock: int
    already_processed: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _positive_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value <= 0:
        raise ValidationError(f"{field} must be positive")
    return value


def normalize_items(items) -> list[StockItem]:
    """
    Coerce [{product_id, quantity}, ...] (or StockItem objects) into a
    de-duplicated list. Duplicate product ids are merged; first-seen order is kept.
    """
    if not items:
        raise ValidationError("At least one item is required")

    merged: dict[int, int] = {}
    for raw in items:
        if isinstance(raw, StockItem):
            product_id, quantity = raw.product_id, raw.quantity
        elif isinstance(raw, dict):
            product_id, quantity = raw.get("product_id"), raw.get("quantity")
        else:
            raise ValidationError("Each item must be an object with product_id and quantity")
        product_id = _positive_int(product_id, "product_id")
        quantity = _positive_int(quantity, "quantity")
        merged[product_id] = merged.get(product_id, 0) + quantity

    return [StockItem(product_id=pid, quantity=qty) for pid, qty in merged.items()]


def _require_warehouse(warehouse_id: int | None) -> Warehouse | None:
    if warehouse_id is None:
        return None
    warehouse = db.session.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise NotFoundError(f"Warehouse {warehouse_id} not found", warehouse_id=warehouse_id)
    return warehouse


def _require_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", product_id=product_id)
    return product


def _record_query(warehouse_id: int | None, product_id: int):
    q = db.session.query(StockRecord).filter(StockRecord.product_id == product_id)
    if warehouse_id is None:
        return q.filter(StockRecord.warehouse_id.is_(None))
    return q.filter(StockRecord.warehouse_id == warehouse_id)


def _load_record(warehouse_id: int | None, product_id: int, *, lock: bool = True) -> StockRecord | None:
    q = _record_query(warehouse_id, product_id)
    if lock:
        q = lock_for_update(q)
    return q.first()


def _find_movement_by_key(idempotency_key: str | None) -> StockMovement | None:
    if not idempotency_key:
        return None
    return (
        db.session.query(StockMovement)
        .filter(StockMovement.idempotency_key == idempotency_key)
        .order_by(StockMovement.id.asc())
        .first()
    )


def _coerce_reason(reason) -> StockAdjustmentReason:
    if isinstance(reason, StockAdjustmentReason):
        return reason
    try:
        return StockAdjustmentReason(str(reason).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown stock adjustment reason: {reason}")


def _apply_change(
    record: StockRecord,
    change: int,
    *,
    reason: StockAdjustmentReason,
    actor: str,
    note: str | None = None,
    reference: str | None = None,
    transfer: StockTransfer | None = None,
    idempotency_key: str | None = None,
) -> StockMovement:
    new_stock = record.stock + change
    if new_stock < 0:
        raise NegativeStockError(
            "Stock cannot go negative",
            warehouse_id=record.warehouse_id,
            product_id=record.product_id,
            stock=record.stock,
            change=change,
        )
    record.stock = new_stock
    movement = StockMovement(
        warehouse_id=record.warehouse_id,
        product_id=record.product_id,
        change=change,
        stock_after=new_stock,
        reason=reason,
        actor=actor or DEFAULT_ACTOR,
        note=note,
        reference=reference,
        transfer_id=transfer.id if transfer is not None else None,
        idempotency_key=idempotency_key,
    )
    db.session.add(movement)
    return movement


def _get_or_create_record(warehouse_id: int | None, product_id: int) -> StockRecord:
    record = _load_record(warehouse_id, product_id)
    if record is None:
        record = StockRecord(warehouse_id=warehouse_id, product_id=product_id, stock=0)
        db.session.add(record)
        db.session.flush()
    return record


def _check_available(warehouse_id: int | None, items: list[StockItem]) -> dict[int, StockRecord]:
    """
    Lock and read every item's record, failing on the first shortfall.

    Nothing is written here.
    """
    records: dict[int, StockRecord] = {}
    for item in items:
        product = _require_product(item.product_id)
        record = _load_record(warehouse_id, item.product_id)
        available = record.stock if record is not None else 0
        if item.quantity > available:
            raise InsufficientStockError(
                item.product_id,
                available=available,
                requested=item.quantity,
                product_name=product.name,
                warehouse_id=warehouse_id,
            )
        records[item.product_id] = record
    return records


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_stock(warehouse_id: int | None, product_id: int) -> int:
    record = _load_record(warehouse_id, product_id, lock=False)
    return record.stock if record is not None else 0


def list_stock(warehouse_id: int | None) -> list[StockRecord]:
    _require_warehouse(warehouse_id)
    q = db.session.query(StockRecord)
    if warehouse_id is None:
        q = q.filter(StockRecord.warehouse_id.is_(None))
    else:
        q = q.filter(StockRecord.warehouse_id == warehouse_id)
    return q.order_by(StockRecord.product_id.asc()).all()


def list_movements(
    *,
    warehouse_id: int | None = None,
    product_id: int | None = None,
    reason: StockAdjustmentReason | None = None,
    reference: str | None = None,
    central: bool = False,
    limit: int = 200,
    offset: int = 0,
) -> list[StockMovement]:
    """Movement log, newest first. central=True restricts to the central pool."""
    q = db.session.query(StockMovement)
    if central:
        q = q.filter(StockMovement.warehouse_id.is_(None))
    elif warehouse_id is not None:
        q = q.filter(StockMovement.warehouse_id == warehouse_id)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if reason is not None:
        q = q.filter(StockMovement.reason == reason)
    if reference:
        q = q.filter(StockMovement.reference == reference)
    return q.order_by(StockMovement.id.desc()).offset(offset).limit(limit).all()


def reconcile_stock(warehouse_id: int | None, product_id: int) -> dict:
    """Compare the cached stock with the sum of logged movements."""
    record = _load_record(warehouse_id, product_id, lock=False)
    q = db.session.query(func.coalesce(func.sum(StockMovement.change), 0)).filter(
        StockMovement.product_id == product_id
    )
    if warehouse_id is None:
        q = q.filter(StockMovement.warehouse_id.is_(None))
    else:
        q = q.filter(StockMovement.warehouse_id == warehouse_id)
    logged = int(q.scalar() or 0)
    cached = record.stock if record is not None else 0

    if logged != cached:
        current_app.logger.error(
            "Stock mismatch warehouse=%s product=%s cached=%s logged=%s",
            warehouse_id, product_id, cached, logged,
        )
    return {
        "warehouse_id": warehouse_id,
        "product_id": product_id,
        "cached_stock": cached,
        "logged_stock": logged,
        "ok": logged == cached,
    }


# ---------------------------------------------------------------------------
# Order decrement
# ---------------------------------------------------------------------------

def _decrement_for_order_inner(
    warehouse_id: int | None,
    items,
    *,
    reference: str | None = None,
    actor: str = DEFAULT_ACTOR,
) -> list[StockMovement]:
    """
    Check-then-decrement every item without committing.

    Caller owns the transaction (order confirmation runs this alongside
    its own status writes).
    """
    items = normalize_items(items)
    records = _check_available(warehouse_id, items)

    movements = []
    for item in items:
        movements.append(
            _apply_change(
                records[item.product_id],
                -item.quantity,
                reason=StockAdjustmentReason.SALE,
                actor=actor,
                reference=reference,
            )
        )
    db.session.flush()
    return movements


def decrement_for_order(
    warehouse_id: int | None,
    items,
    *,
    reference: str | None = None,
    actor: str = DEFAULT_ACTOR,
) -> list[StockMovement]:
    """All-or-nothing decrement of several items; raises InsufficientStockError."""
    def _op():
        begin_write()
        movements = _decrement_for_order_inner(warehouse_id, items, reference=reference, actor=actor)
        db.session.commit()
        return movements

    return run_with_retry(_op)


# ---------------------------------------------------------------------------
# Single-record adjustments
# ---------------------------------------------------------------------------

def _increment_inner(
    warehouse_id: int | None,
    product_id: int,
    quantity: int,
    *,
    reason: StockAdjustmentReason,
    actor: str,
    note: str | None = None,
    reference: str | None = None,
    idempotency_key: str | None = None,
) -> StockMovement:
    quantity = _positive_int(quantity, "quantity")
    _require_warehouse(warehouse_id)
    _require_product(product_id)
    record = _get_or_create_record(warehouse_id, product_id)
    return _apply_change(
        record,
        quantity,
        reason=reason,
        actor=actor,
        note=note,
        reference=reference,
        idempotency_key=idempotency_key,
    )


def increment(
    warehouse_id: int | None,
    product_id: int,
    quantity: int,
    *,
    reason: StockAdjustmentReason = StockAdjustmentReason.RESTOCK,
    actor: str = DEFAULT_ACTOR,
    note: str | None = None,
    reference: str | None = None,
    idempotency_key: str | None = None,
) -> StockMovement:
    """
    Add stock, creating the record on first use.

    A repeated idempotency_key returns the original movement.
    """
    reason = _coerce_reason(reason)

    def _op():
        begin_write()
        existing = _find_movement_by_key(idempotency_key)
        if existing is not None:
            return existing
        movement = _increment_inner(
            warehouse_id,
            product_id,
            quantity,
            reason=reason,
            actor=actor,
            note=note,
            reference=reference,
            idempotency_key=idempotency_key,
        )
        db.session.commit()
        return movement

    # Two first-time increments can race to create the same record
    return run_with_retry(_op, retry_on=(IntegrityError,))


def _decrement_inner(
    warehouse_id: int | None,
    product_id: int,
    quantity: int,
    *,
    reason: StockAdjustmentReason,
    actor: str,
    note: str | None = None,
    idempotency_key: str | None = None,
) -> StockMovement:
    quantity = _positive_int(quantity, "quantity")
    _require_warehouse(warehouse_id)
    _require_product(product_id)
    record = _load_record(warehouse_id, product_id)
    available = record.stock if record is not None else 0
    if quantity > available:
        raise NegativeStockError(
            f"Cannot remove {quantity} units; only {available} in stock",
            warehouse_id=warehouse_id,
            product_id=product_id,
            stock=available,
            change=-quantity,
        )
    return _apply_change(
        record,
        -quantity,
        reason=reason,
        actor=actor,
        note=note,
        idempotency_key=idempotency_key,
    )


def decrement(
    warehouse_id: int | None,
    product_id: int,
    quantity: int,
    *,
    reason: StockAdjustmentReason = StockAdjustmentReason.DAMAGE,
    actor: str = DEFAULT_ACTOR,
    note: str | None = None,
    idempotency_key: str | None = None,
) -> StockMovement:
    """Remove stock (write-offs, corrections). Rejects going below zero."""
    reason = _coerce_reason(reason)

    def _op():
        begin_write()
        existing = _find_movement_by_key(idempotency_key)
        if existing is not None:
            return existing
        movement = _decrement_inner(
            warehouse_id,
            product_id,
            quantity,
            reason=reason,
            actor=actor,
            note=note,
            idempotency_key=idempotency_key,
        )
        db.session.commit()
        return movement

    return run_with_retry(_op)


def _require_level(new_stock, warehouse_id, product_id) -> int:
    if isinstance(new_stock, bool) or not isinstance(new_stock, int):
        raise ValidationError("new_stock must be an integer")
    if new_stock < 0:
        raise NegativeStockError(
            "Stock cannot be set below zero",
            warehouse_id=warehouse_id,
            product_id=product_id,
            requested=new_stock,
        )
    return new_stock


def _set_absolute_inner(
    warehouse_id: int | None,
    product_id: int,
    new_stock: int,
    *,
    reason: StockAdjustmentReason,
    actor: str,
    note: str | None = None,
    idempotency_key: str | None = None,
) -> StockMovement | None:
    _require_warehouse(warehouse_id)
    _require_product(product_id)
    record = _get_or_create_record(warehouse_id, product_id)
    change = new_stock - record.stock
    if change == 0:
        return None
    return _apply_change(
        record,
        change,
        reason=reason,
        actor=actor,
        note=note,
        idempotency_key=idempotency_key,
    )


def set_absolute(
    warehouse_id: int | None,
    product_id: int,
    new_stock: int,
    *,
    reason: StockAdjustmentReason = StockAdjustmentReason.CORRECTION,
    actor: str = DEFAULT_ACTOR,
    note: str | None = None,
    idempotency_key: str | None = None,
) -> StockMovement | None:
    """
    Overwrite the stock level (manual count correction).

    Returns None when the value is unchanged; nothing is logged then.
    """
    new_stock = _require_level(new_stock, warehouse_id, product_id)
    reason = _coerce_reason(reason)

    def _op():
        begin_write()
        existing = _find_movement_by_key(idempotency_key)
        if existing is not None:
            return existing
        movement = _set_absolute_inner(
            warehouse_id,
            product_id,
            new_stock,
            reason=reason,
            actor=actor,
            note=note,
            idempotency_key=idempotency_key,
        )
        db.session.commit()
        return movement

    return run_with_retry(_op, retry_on=(IntegrityError,))


DEFAULT_ADJUSTMENT_REASONS = {
    StockAdjustmentType.SET: StockAdjustmentReason.CORRECTION,
    StockAdjustmentType.INCREMENT: StockAdjustmentReason.RESTOCK,
    StockAdjustmentType.DECREMENT: StockAdjustmentReason.CORRECTION,
}


def adjust_stock(
    warehouse_id: int | None,
    product_id: int,
    change: int,
    *,
    adjustment_type: StockAdjustmentType | str = StockAdjustmentType.INCREMENT,
    reason: StockAdjustmentReason | str | None = None,
    actor: str,
    note: str | None = None,
    idempotency_key: str | None = None,
) -> AdjustmentResult:
    """
    Admin stock adjustment.

    - set: `change` is the new absolute level
    - increment / decrement: `change` is a positive quantity

    The movement and its audit row are committed together.
    """
    try:
        adjustment_type = StockAdjustmentType(adjustment_type)
    except ValueError:
        raise ValidationError(f"Unknown adjustment type: {adjustment_type}")

    reason = _coerce_reason(reason if reason is not None else DEFAULT_ADJUSTMENT_REASONS[adjustment_type])
    if adjustment_type == StockAdjustmentType.SET:
        change = _require_level(change, warehouse_id, product_id)

    def _op():
        begin_write()
        existing = _find_movement_by_key(idempotency_key)
        if existing is not None:
            return AdjustmentResult(
                movement=existing,
                stock=get_stock(warehouse_id, product_id),
                already_processed=True,
            )

        kwargs = dict(reason=reason, actor=actor, note=note, idempotency_key=idempotency_key)
        if adjustment_type == StockAdjustmentType.SET:
            movement = _set_absolute_inner(warehouse_id, product_id, change, **kwargs)
        elif adjustment_type == StockAdjustmentType.INCREMENT:
            movement = _increment_inner(warehouse_id, product_id, change, **kwargs)
        else:
            movement = _decrement_inner(warehouse_id, product_id, change, **kwargs)

        if movement is not None:
            db.session.flush()
            log_admin_action(
                action=AuditAction.STOCK_ADJUSTMENT,
                performed_by=actor,
                target_type="STOCK",
                target_id=f"{warehouse_id or 'central'}:{product_id}",
                details=f"Stock {adjustment_type.value} by {movement.change} ({reason.value})",
                metadata={
                    "movement_id": movement.id,
                    "change": movement.change,
                    "stock_after": movement.stock_after,
                    "reason": reason.value,
                    "note": note,
                },
            )
        db.session.commit()
        return AdjustmentResult(movement=movement, stock=get_stock(warehouse_id, product_id))

    result = run_with_retry(_op, retry_on=(IntegrityError,))
    if result.movement is not None and not result.already_processed:
        current_app.logger.info(
            "Stock adjusted warehouse=%s product=%s change=%s reason=%s actor=%s",
            warehouse_id, product_id, result.movement.change, reason.value, actor,
        )
    return result


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------

def transfer(
    source_warehouse_id: int,
    dest_warehouse_id: int,
    items,
    *,
    actor: str,
    idempotency_key: str | None = None,
    note: str | None = None,
) -> TransferResult:
    """
    Move stock between two warehouses in one atomic unit.

    Raises SameWarehouseError, NotFoundError or InsufficientStockError;
    on any failure neither side changes.
    """
    if source_warehouse_id == dest_warehouse_id:
        raise SameWarehouseError(source_warehouse_id)
    items = normalize_items(items)

    def _op():
        begin_write()
        if idempotency_key:
            existing = (
                db.session.query(StockTransfer)
                .filter(StockTransfer.idempotency_key == idempotency_key)
                .first()
            )
            if existing is not None:
                return TransferResult(transfer=existing, already_processed=True)

        _require_warehouse(source_warehouse_id)
        _require_warehouse(dest_warehouse_id)
        for item in items:
            _require_product(item.product_id)

        source_records = _check_available(source_warehouse_id, items)

        doc = StockTransfer(
            source_warehouse_id=source_warehouse_id,
            dest_warehouse_id=dest_warehouse_id,
            idempotency_key=idempotency_key,
            actor=actor,
            note=note,
        )
        db.session.add(doc)
        db.session.flush()

        for item in items:
            _apply_change(
                source_records[item.product_id],
                -item.quantity,
                reason=StockAdjustmentReason.TRANSFER_OUT,
                actor=actor,
                note=note,
                reference=doc.reference,
                transfer=doc,
            )
            dest_record = _get_or_create_record(dest_warehouse_id, item.product_id)
            _apply_change(
                dest_record,
                item.quantity,
                reason=StockAdjustmentReason.TRANSFER_IN,
                actor=actor,
                note=note,
                reference=doc.reference,
                transfer=doc,
            )

        db.session.flush()
        log_admin_action(
            action=AuditAction.STOCK_TRANSFER,
            performed_by=actor,
            target_type="TRANSFER",
            target_id=doc.id,
            details=f"Transfer {source_warehouse_id} -> {dest_warehouse_id}",
            metadata={
                "items": [{"product_id": i.product_id, "quantity": i.quantity} for i in items],
                "idempotency_key": idempotency_key,
            },
        )
        db.session.commit()
        return TransferResult(transfer=doc)

    # IntegrityError: a concurrent request claimed the idempotency key or created a record
    result = run_with_retry(_op, retry_on=(IntegrityError,))
    if not result.already_processed:
        current_app.logger.info(
            "Transfer %s: warehouse %s -> %s, %d item(s) by %s",
            result.transfer.id, source_warehouse_id, dest_warehouse_id, len(items), actor,
        )
    return result
