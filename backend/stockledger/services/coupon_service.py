# Overview: Service-layer operations for coupons; pure discount pricing plus redemption bookkeeping.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from ..exceptions import ValidationError
from ..extensions import db
from ..models import Coupon, CouponDiscountType
from ..money import apply_percent
from ..time_utils import parse_iso_datetime, utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry


INELIGIBLE_INACTIVE = "inactive"
INELIGIBLE_EXPIRED = "expired"
INELIGIBLE_BELOW_MINIMUM = "below_minimum"
INELIGIBLE_USAGE_LIMIT = "usage_limit_reached"
INELIGIBLE_NOT_FOUND = "not_found"


@dataclass(frozen=True)
class CouponQuote:
    discount_cents: int
    eligible: bool
    reason: str | None = None

    @classmethod
    def ineligible(cls, reason: str) -> "CouponQuote":
        return cls(discount_cents=0, eligible=False, reason=reason)


def _as_naive_utc(dt: datetime | None) -> datetime | None:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def price_coupon(coupon: Coupon | None, subtotal_cents: int, now: datetime | None = None) -> CouponQuote:
    """
    Price a coupon against a subtotal. No side effects.

    Checks short-circuit in order: active, not expired, minimum order value,
    usage limit. An ineligible coupon yields a zero discount with a reason;
    it never blocks checkout. The discount never exceeds the subtotal.
    """
    if coupon is None:
        return CouponQuote.ineligible(INELIGIBLE_NOT_FOUND)
    if not coupon.is_active:
        return CouponQuote.ineligible(INELIGIBLE_INACTIVE)

    now = _as_naive_utc(now) or utcnow()
    expires_at = _as_naive_utc(coupon.expires_at)
    if expires_at is not None and expires_at <= now:
        return CouponQuote.ineligible(INELIGIBLE_EXPIRED)

    if subtotal_cents < (coupon.min_order_value_cents or 0):
        return CouponQuote.ineligible(INELIGIBLE_BELOW_MINIMUM)

    if coupon.usage_limit is not None and (coupon.used_count or 0) >= coupon.usage_limit:
        return CouponQuote.ineligible(INELIGIBLE_USAGE_LIMIT)

    if coupon.discount_type == CouponDiscountType.PERCENTAGE:
        discount = apply_percent(subtotal_cents, coupon.discount_value)
        if coupon.max_discount_cents is not None:
            discount = min(discount, coupon.max_discount_cents)
    else:
        discount = coupon.discount_value

    discount = max(0, min(discount, subtotal_cents))
    return CouponQuote(discount_cents=discount, eligible=True)


def normalize_code(code: str | None) -> str | None:
    if code is None:
        return None
    code = str(code).strip().upper()
    return code or None


def find_coupon(code: str | None, *, lock: bool = False) -> Coupon | None:
    code = normalize_code(code)
    if not code:
        return None
    q = db.session.query(Coupon).filter(Coupon.code == code)
    if lock:
        q = lock_for_update(q)
    return q.first()


def _redeem_inner(coupon: Coupon) -> None:
    """
    Count one use. Caller owns the transaction and must have priced the
    coupon on the locked row first; version_id rejects a concurrent redeemer.
    """
    coupon.used_count = (coupon.used_count or 0) + 1


def create_coupon(data: dict) -> Coupon:
    code = normalize_code(data.get("code"))
    if not code:
        raise ValidationError("code is required")

    try:
        discount_type = CouponDiscountType(str(data.get("discount_type", "")).upper())
    except ValueError:
        raise ValidationError("discount_type must be PERCENTAGE or FLAT")

    value = data.get("discount_value")
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError("discount_value must be a positive integer")
    if discount_type == CouponDiscountType.PERCENTAGE and value > 100:
        raise ValidationError("Percentage discount cannot exceed 100")

    for key in ("min_order_value_cents", "max_discount_cents", "usage_limit"):
        v = data.get(key)
        if v is not None and (isinstance(v, bool) or not isinstance(v, int) or v < 0):
            raise ValidationError(f"{key} must be a non-negative integer")

    is_active = data.get("is_active", True)
    if not isinstance(is_active, bool):
        raise ValidationError("is_active must be a boolean")

    expires_at = data.get("expires_at")
    if isinstance(expires_at, str):
        try:
            expires_at = parse_iso_datetime(expires_at)
        except ValueError:
            raise ValidationError("expires_at must be an ISO-8601 datetime")

    def _op():
        begin_write()
        if db.session.query(Coupon.id).filter(Coupon.code == code).first():
            raise ValidationError(f"Coupon {code} already exists")
        coupon = Coupon(
            code=code,
            description=data.get("description"),
            discount_type=discount_type,
            discount_value=value,
            min_order_value_cents=data.get("min_order_value_cents") or 0,
            max_discount_cents=data.get("max_discount_cents"),
            expires_at=_as_naive_utc(expires_at),
            usage_limit=data.get("usage_limit"),
            used_count=0,
            is_active=is_active,
        )
        db.session.add(coupon)
        db.session.commit()
        return coupon

    return run_with_retry(_op)


def list_coupons(active_only: bool = False) -> list[Coupon]:
    q = db.session.query(Coupon)
    if active_only:
        q = q.filter(Coupon.is_active.is_(True))
    return q.order_by(Coupon.code.asc()).all()
