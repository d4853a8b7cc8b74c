from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class FinancialSettings(db.Model):
    """
    Platform-wide financial configuration (single row, id=1).

    commission_rate_bps is read inside every ledger transaction; there is no
    cache, so a change applies to the very next sale/refund.
    """
    __tablename__ = "financial_settings"

    id = db.Column(db.Integer, primary_key=True)

    commission_rate_bps = db.Column(db.Integer, nullable=False, default=1000)

    tax_enabled = db.Column(db.Boolean, nullable=False, default=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)

    delivery_fee_enabled = db.Column(db.Boolean, nullable=False, default=False)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)

    currency = db.Column(db.String(8), nullable=False, default="INR")

    updated_by = db.Column(db.String(128), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "commission_rate_bps": self.commission_rate_bps,
            "tax_enabled": self.tax_enabled,
            "tax_rate_bps": self.tax_rate_bps,
            "delivery_fee_enabled": self.delivery_fee_enabled,
            "delivery_fee_cents": self.delivery_fee_cents,
            "currency": self.currency,
            "updated_by": self.updated_by,
            "updated_at": to_utc_z(self.updated_at),
        }
