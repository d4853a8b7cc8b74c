# Overview: Service-layer operations for the warehouse ledger; double-entry sale, refund and payout bookkeeping.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..exceptions import InsufficientBalanceError, NotFoundError, ValidationError
from ..extensions import db
from ..models import AuditAction, LedgerCategory, LedgerDirection, LedgerEntry, Warehouse
from ..money import apply_bps
from .audit_service import log_admin_action
from .concurrency import begin_write, lock_for_update, run_with_retry
from .settings_service import RateReader, read_commission_rate_bps
"""
Warehouse Ledger Invariants (authoritative)

- Append-only: LedgerEntry rows are never updated or deleted.
- Every entry carries balance_before / balance_after; the warehouse's
  ledger_balance_cents equals the balance_after of its latest entry.
- A sale writes exactly two rows: CREDIT SALE (order total) then
  DEBIT COMMISSION (total * rate). A refund mirrors it: DEBIT REFUND then
  CREDIT COMMISSION_REVERSAL.
- SALE and REFUND pairs are written at most once per (warehouse, order).
- The commission rate is read inside the same transaction as the entries.
- Payouts never drive the balance below zero.
- Orders fulfilled from the central pool (no warehouse) have no ledger.
"""


PAYOUT_PREFIX = "PAYOUT-"
SALE_PAIR = (LedgerCategory.SALE, LedgerCategory.COMMISSION)
REFUND_PAIR = (LedgerCategory.REFUND, LedgerCategory.COMMISSION_REVERSAL)


@dataclass
class LedgerPosting:
    """Entries written (or found) for one ledger operation."""
    entries: list[LedgerEntry]
    already_processed: bool = False

    @property
    def balance_after_cents(self) -> int | None:
        if not self.entries:
            return None
        return self.entries[-1].balance_after_cents


def _load_warehouse(warehouse_id: int, *, lock: bool = True) -> Warehouse:
    query = db.session.query(Warehouse).filter(Warehouse.id == warehouse_id)
    if lock:
        query = lock_for_update(query)
    warehouse = query.first()
    if warehouse is None:
        raise NotFoundError(f"Warehouse {warehouse_id} not found", warehouse_id=warehouse_id)
    return warehouse


def _existing_entries(warehouse_id: int, transaction_id: str, categories) -> list[LedgerEntry]:
    return (
        db.session.query(LedgerEntry)
        .filter(
            LedgerEntry.warehouse_id == warehouse_id,
            LedgerEntry.transaction_id == transaction_id,
            LedgerEntry.category.in_(list(categories)),
        )
        .order_by(LedgerEntry.id.asc())
        .all()
    )


def _post(
    warehouse: Warehouse,
    *,
    transaction_id: str,
    direction: LedgerDirection,
    category: LedgerCategory,
    amount_cents: int,
    description: str,
    rate_bps: int | None = None,
) -> LedgerEntry:
    before = warehouse.ledger_balance_cents or 0
    if direction == LedgerDirection.CREDIT:
        after = before + amount_cents
    else:
        after = before - amount_cents

    entry = LedgerEntry(
        transaction_id=transaction_id,
        warehouse_id=warehouse.id,
        direction=direction,
        category=category,
        amount_cents=amount_cents,
        balance_before_cents=before,
        balance_after_cents=after,
        rate_bps=rate_bps,
        description=description[:255],
    )
    db.session.add(entry)
    warehouse.ledger_balance_cents = after
    return entry


def _validate_amount(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("amount_cents must be an integer")
    if amount_cents < 0:
        raise ValidationError("amount_cents must be non-negative")
    return amount_cents


def _record_sale_inner(
    warehouse_id: int | None,
    order_total_cents: int,
    transaction_id: str,
    *,
    rate_reader: RateReader | None = None,
) -> LedgerPosting:
    """
    Write the SALE/COMMISSION pair without committing.

    Used directly by order_service inside its own transaction.
    """
    if warehouse_id is None:
        current_app.logger.info("Ledger skipped for transaction %s: no warehouse", transaction_id)
        return LedgerPosting(entries=[])

    amount = _validate_amount(order_total_cents)
    transaction_id = str(transaction_id)
    warehouse = _load_warehouse(warehouse_id)

    existing = _existing_entries(warehouse.id, transaction_id, SALE_PAIR)
    if existing:
        return LedgerPosting(entries=existing, already_processed=True)

    rate_bps = (rate_reader or read_commission_rate_bps)()
    commission = apply_bps(amount, rate_bps)

    credit = _post(
        warehouse,
        transaction_id=transaction_id,
        direction=LedgerDirection.CREDIT,
        category=LedgerCategory.SALE,
        amount_cents=amount,
        description=f"Sale for order {transaction_id}",
    )
    debit = _post(
        warehouse,
        transaction_id=transaction_id,
        direction=LedgerDirection.DEBIT,
        category=LedgerCategory.COMMISSION,
        amount_cents=commission,
        rate_bps=rate_bps,
        description=f"Platform commission ({rate_bps} bps) for order {transaction_id}",
    )
    db.session.flush()
    return LedgerPosting(entries=[credit, debit])


def record_sale(
    warehouse_id: int | None,
    order_total_cents: int,
    transaction_id: str,
    *,
    rate_reader: RateReader | None = None,
) -> LedgerPosting:
    """Credit the order total and debit the platform commission atomically."""
    def _op():
        begin_write()
        posting = _record_sale_inner(
            warehouse_id, order_total_cents, transaction_id, rate_reader=rate_reader
        )
        db.session.commit()
        return posting

    posting = run_with_retry(_op)
    if posting.entries and not posting.already_processed:
        current_app.logger.info(
            "Ledger sale recorded: warehouse=%s txn=%s total=%s balance=%s",
            warehouse_id, transaction_id, order_total_cents, posting.balance_after_cents,
        )
    return posting


def _record_refund_inner(
    warehouse_id: int | None,
    order_total_cents: int,
    transaction_id: str,
    *,
    rate_reader: RateReader | None = None,
) -> LedgerPosting:
    """
    Write the REFUND/COMMISSION_REVERSAL pair without committing.

    The reversal uses the rate in force now, not the rate of the sale.
    """
    if warehouse_id is None:
        current_app.logger.info("Ledger refund skipped for transaction %s: no warehouse", transaction_id)
        return LedgerPosting(entries=[])

    amount = _validate_amount(order_total_cents)
    transaction_id = str(transaction_id)
    warehouse = _load_warehouse(warehouse_id)

    existing = _existing_entries(warehouse.id, transaction_id, REFUND_PAIR)
    if existing:
        return LedgerPosting(entries=existing, already_processed=True)

    rate_bps = (rate_reader or read_commission_rate_bps)()
    commission = apply_bps(amount, rate_bps)

    debit = _post(
        warehouse,
        transaction_id=transaction_id,
        direction=LedgerDirection.DEBIT,
        category=LedgerCategory.REFUND,
        amount_cents=amount,
        description=f"Refund for order {transaction_id}",
    )
    credit = _post(
        warehouse,
        transaction_id=transaction_id,
        direction=LedgerDirection.CREDIT,
        category=LedgerCategory.COMMISSION_REVERSAL,
        amount_cents=commission,
        rate_bps=rate_bps,
        description=f"Commission reversal ({rate_bps} bps) for order {transaction_id}",
    )
    db.session.flush()
    return LedgerPosting(entries=[debit, credit])


def record_refund(
    warehouse_id: int | None,
    order_total_cents: int,
    transaction_id: str,
    *,
    rate_reader: RateReader | None = None,
) -> LedgerPosting:
    """Debit the refunded total and credit back the commission atomically."""
    def _op():
        begin_write()
        posting = _record_refund_inner(
            warehouse_id, order_total_cents, transaction_id, rate_reader=rate_reader
        )
        db.session.commit()
        return posting

    posting = run_with_retry(_op)
    if posting.entries and not posting.already_processed:
        current_app.logger.info(
            "Ledger refund recorded: warehouse=%s txn=%s total=%s balance=%s",
            warehouse_id, transaction_id, order_total_cents, posting.balance_after_cents,
        )
    return posting


def record_payout(warehouse_id: int, amount_cents: int, reference: str, *, actor: str) -> LedgerPosting:
    """
    Pay out part of a warehouse's balance.

    The reference identifies the payout; repeating a reference returns the
    original entry instead of paying twice.
    """
    amount = _validate_amount(amount_cents)
    if amount == 0:
        raise ValidationError("Payout amount must be positive")
    reference = (reference or "").strip()
    if not reference:
        raise ValidationError("Payout reference is required")
    transaction_id = f"{PAYOUT_PREFIX}{reference}"

    def _op():
        begin_write()
        warehouse = _load_warehouse(warehouse_id)

        existing = (
            db.session.query(LedgerEntry)
            .filter(
                LedgerEntry.warehouse_id == warehouse.id,
                LedgerEntry.transaction_id == transaction_id,
                LedgerEntry.category == LedgerCategory.PAYOUT,
            )
            .all()
        )
        if existing:
            return LedgerPosting(entries=existing, already_processed=True)

        balance = warehouse.ledger_balance_cents or 0
        if balance < amount:
            raise InsufficientBalanceError(warehouse.id, balance_cents=balance, requested_cents=amount)

        entry = _post(
            warehouse,
            transaction_id=transaction_id,
            direction=LedgerDirection.DEBIT,
            category=LedgerCategory.PAYOUT,
            amount_cents=amount,
            description=f"Payout {reference}",
        )
        db.session.flush()
        log_admin_action(
            action=AuditAction.PAYOUT,
            performed_by=actor,
            target_type="WAREHOUSE",
            target_id=warehouse.id,
            details=f"Payout {reference} of {amount}",
            metadata={
                "reference": reference,
                "amount_cents": amount,
                "balance_before_cents": entry.balance_before_cents,
                "balance_after_cents": entry.balance_after_cents,
            },
        )
        db.session.commit()
        return LedgerPosting(entries=[entry])

    posting = run_with_retry(_op)
    if not posting.already_processed:
        current_app.logger.info(
            "Payout %s of %s from warehouse %s by %s", reference, amount, warehouse_id, actor
        )
    return posting


def get_balance(warehouse_id: int) -> int:
    warehouse = _load_warehouse(warehouse_id, lock=False)
    return int(warehouse.ledger_balance_cents or 0)


def list_entries(
    warehouse_id: int,
    *,
    transaction_id: str | None = None,
    category: LedgerCategory | None = None,
    limit: int = 200,
    offset: int = 0,
) -> list[LedgerEntry]:
    """Entries for a warehouse, oldest first."""
    _load_warehouse(warehouse_id, lock=False)
    q = db.session.query(LedgerEntry).filter(LedgerEntry.warehouse_id == warehouse_id)
    if transaction_id is not None:
        q = q.filter(LedgerEntry.transaction_id == str(transaction_id))
    if category is not None:
        q = q.filter(LedgerEntry.category == category)
    return q.order_by(LedgerEntry.id.asc()).offset(offset).limit(limit).all()


def verify_ledger(warehouse_id: int | None = None) -> list[dict]:
    """
    Replay ledger entries and compare against cached balances.

    Returns one report per warehouse: the replayed sum, the cached balance,
    and any rows whose balance_before does not chain from the previous row.
    """
    q = db.session.query(Warehouse)
    if warehouse_id is not None:
        q = q.filter(Warehouse.id == warehouse_id)

    reports = []
    for warehouse in q.order_by(Warehouse.id.asc()).all():
        entries = (
            db.session.query(LedgerEntry)
            .filter(LedgerEntry.warehouse_id == warehouse.id)
            .order_by(LedgerEntry.id.asc())
            .all()
        )
        running = 0
        broken = []
        for entry in entries:
            if entry.balance_before_cents != running:
                broken.append(entry.id)
            running = entry.balance_before_cents + entry.signed_amount_cents
            if entry.balance_after_cents != running:
                broken.append(entry.id)

        replayed = sum(entry.signed_amount_cents for entry in entries)

        cached = int(warehouse.ledger_balance_cents or 0)
        ok = not broken and int(replayed) == cached
        if not ok:
            current_app.logger.error(
                "Ledger mismatch for warehouse %s: cached=%s replayed=%s broken_rows=%s",
                warehouse.id, cached, replayed, sorted(set(broken)),
            )
        reports.append({
            "warehouse_id": warehouse.id,
            "cached_balance_cents": cached,
            "replayed_balance_cents": int(replayed),
            "entry_count": len(entries),
            "broken_entry_ids": sorted(set(broken)),
            "ok": ok,
        })
    return reports
