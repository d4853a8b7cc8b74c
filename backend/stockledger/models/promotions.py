from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import CouponDiscountType, enum_column


class Coupon(db.Model):
    """
    Discount code.

    discount_value is a whole percent for PERCENTAGE coupons and minor units
    for FLAT coupons. used_count is incremented in the same transaction as
    the order that redeems the coupon and never exceeds usage_limit.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        db.CheckConstraint("used_count >= 0", name="ck_coupons_used_count_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True)
    description = db.Column(db.String(255), nullable=True)

    discount_type = db.Column(enum_column(CouponDiscountType, length=16), nullable=False)
    discount_value = db.Column(db.Integer, nullable=False)

    min_order_value_cents = db.Column(db.Integer, nullable=False, default=0)
    max_discount_cents = db.Column(db.Integer, nullable=True)  # cap for PERCENTAGE

    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    usage_limit = db.Column(db.Integer, nullable=True)
    used_count = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "discount_type": self.discount_type.value,
            "discount_value": self.discount_value,
            "min_order_value_cents": self.min_order_value_cents,
            "max_discount_cents": self.max_discount_cents,
            "expires_at": to_utc_z(self.expires_at),
            "usage_limit": self.usage_limit,
            "used_count": self.used_count,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
