# Overview: Service-layer operations for platform financial settings.

"""
Financial settings.

One FinancialSettings row (id=1) holds the commission rate, tax and
delivery-fee configuration. Until it is saved, defaults come from the Flask
config (DEFAULT_COMMISSION_RATE_BPS, CURRENCY).

The commission rate is exposed through a *rate reader*: a zero-argument
callable returning basis points. Ledger operations call it inside their own
transaction so a rate change applies immediately; callers may inject a
different reader.
"""
from __future__ import annotations

from typing import Callable

from flask import current_app

from ..exceptions import ValidationError
from ..extensions import db
from ..models import AuditAction, FinancialSettings
from .audit_service import log_admin_action
from .concurrency import begin_write, run_with_retry


SETTINGS_ROW_ID = 1
MAX_RATE_BPS = 10_000

RateReader = Callable[[], int]


def _defaults() -> FinancialSettings:
    config = current_app.config
    return FinancialSettings(
        id=SETTINGS_ROW_ID,
        commission_rate_bps=config.get("DEFAULT_COMMISSION_RATE_BPS", 1000),
        tax_enabled=False,
        tax_rate_bps=0,
        delivery_fee_enabled=False,
        delivery_fee_cents=0,
        currency=config.get("CURRENCY", "INR"),
    )


def get_financial_settings() -> FinancialSettings:
    """Current settings row, or an unsaved defaults object."""
    settings = db.session.get(FinancialSettings, SETTINGS_ROW_ID)
    if settings is None:
        return _defaults()
    return settings


def read_commission_rate_bps() -> int:
    """Default rate reader: reads the settings row fresh on every call."""
    rate = (
        db.session.query(FinancialSettings.commission_rate_bps)
        .filter(FinancialSettings.id == SETTINGS_ROW_ID)
        .scalar()
    )
    if rate is None:
        return int(current_app.config.get("DEFAULT_COMMISSION_RATE_BPS", 1000))
    return int(rate)


def _require_bps(data: dict, key: str) -> int:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer number of basis points")
    if value < 0 or value > MAX_RATE_BPS:
        raise ValidationError(f"{key} must be between 0 and {MAX_RATE_BPS}")
    return value


def update_financial_settings(data: dict, *, actor: str) -> FinancialSettings:
    """
    Update any subset of the settings fields.

    Writes an audit row in the same transaction.
    """
    unknown = set(data) - {
        "commission_rate_bps",
        "tax_enabled",
        "tax_rate_bps",
        "delivery_fee_enabled",
        "delivery_fee_cents",
        "currency",
    }
    if unknown:
        raise ValidationError(f"Unknown settings fields: {', '.join(sorted(unknown))}")

    def _op():
        begin_write()
        settings = db.session.get(FinancialSettings, SETTINGS_ROW_ID)
        if settings is None:
            settings = _defaults()
            db.session.add(settings)

        before = settings.to_dict()

        for key in ("commission_rate_bps", "tax_rate_bps"):
            if key in data:
                setattr(settings, key, _require_bps(data, key))
        for key in ("tax_enabled", "delivery_fee_enabled"):
            if key in data:
                if not isinstance(data[key], bool):
                    raise ValidationError(f"{key} must be a boolean")
                setattr(settings, key, data[key])
        if "delivery_fee_cents" in data:
            fee = data["delivery_fee_cents"]
            if isinstance(fee, bool) or not isinstance(fee, int) or fee < 0:
                raise ValidationError("delivery_fee_cents must be a non-negative integer")
            settings.delivery_fee_cents = fee
        if "currency" in data:
            currency = str(data["currency"] or "").strip().upper()
            if len(currency) != 3:
                raise ValidationError("currency must be a 3-letter code")
            settings.currency = currency

        settings.updated_by = actor
        db.session.flush()

        log_admin_action(
            action=AuditAction.SYSTEM_CONFIG_UPDATE,
            performed_by=actor,
            target_type="SYSTEM",
            target_id="financial_settings",
            details="Financial settings updated",
            metadata={"before": {k: before[k] for k in data}, "after": {k: data[k] for k in data}},
        )
        db.session.commit()
        return settings

    settings = run_with_retry(_op)
    current_app.logger.info("Financial settings updated by %s: %s", actor, sorted(data))
    return settings
