from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import LedgerCategory, LedgerDirection, enum_column


class LedgerEntry(db.Model):
    """
    Append-only warehouse ledger row.

    Each row is self-describing: balance_after = balance_before +/- amount
    (CREDIT adds, DEBIT subtracts). Replaying a warehouse's rows in id order
    reproduces Warehouse.ledger_balance_cents exactly.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_entries_warehouse_created", "warehouse_id", "created_at"),
        db.Index("ix_ledger_entries_warehouse_txn_category", "warehouse_id", "transaction_id", "category"),
        db.CheckConstraint("amount_cents >= 0", name="ck_ledger_entries_amount_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Usually the order id; "PAYOUT-<reference>" for payouts
    transaction_id = db.Column(db.String(128), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    direction = db.Column(enum_column(LedgerDirection, length=8), nullable=False)
    category = db.Column(enum_column(LedgerCategory), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    balance_before_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    # Commission rate applied (COMMISSION / COMMISSION_REVERSAL rows only)
    rate_bps = db.Column(db.Integer, nullable=True)

    description = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    @property
    def signed_amount_cents(self) -> int:
        if self.direction == LedgerDirection.CREDIT:
            return self.amount_cents
        return -self.amount_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "warehouse_id": self.warehouse_id,
            "direction": self.direction.value,
            "category": self.category.value,
            "amount_cents": self.amount_cents,
            "balance_before_cents": self.balance_before_cents,
            "balance_after_cents": self.balance_after_cents,
            "rate_bps": self.rate_bps,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
        }
