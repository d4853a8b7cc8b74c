"""
Coupon pricing tests. price_coupon() is pure, so most cases use unsaved
Coupon objects.
"""

from datetime import timedelta

import pytest

from stockledger.exceptions import ValidationError
from stockledger.models import Coupon, CouponDiscountType
from stockledger.services import coupon_service
from stockledger.time_utils import utcnow


def _coupon(**overrides):
    values = {
        "code": "SAVE20",
        "discount_type": CouponDiscountType.PERCENTAGE,
        "discount_value": 20,
        "min_order_value_cents": 0,
        "max_discount_cents": None,
        "expires_at": None,
        "usage_limit": None,
        "used_count": 0,
        "is_active": True,
    }
    values.update(overrides)
    return Coupon(**values)


def test_percentage_is_capped_by_max_discount():
    quote = coupon_service.price_coupon(_coupon(max_discount_cents=10000), 100000)
    assert quote.eligible is True
    assert quote.discount_cents == 10000


def test_percentage_below_cap():
    quote = coupon_service.price_coupon(_coupon(max_discount_cents=10000), 5000)
    assert quote.discount_cents == 1000


def test_percentage_rounds_half_up():
    quote = coupon_service.price_coupon(_coupon(discount_value=15), 1010)
    assert quote.discount_cents == 152


def test_flat_discount_never_exceeds_subtotal():
    coupon = _coupon(discount_type=CouponDiscountType.FLAT, discount_value=500)
    assert coupon_service.price_coupon(coupon, 300).discount_cents == 300
    assert coupon_service.price_coupon(coupon, 2000).discount_cents == 500


@pytest.mark.parametrize(
    "overrides, subtotal, reason",
    [
        ({"is_active": False}, 5000, coupon_service.INELIGIBLE_INACTIVE),
        ({"expires_at": utcnow() - timedelta(days=1)}, 5000, coupon_service.INELIGIBLE_EXPIRED),
        ({"min_order_value_cents": 10000}, 5000, coupon_service.INELIGIBLE_BELOW_MINIMUM),
        ({"usage_limit": 3, "used_count": 3}, 5000, coupon_service.INELIGIBLE_USAGE_LIMIT),
    ],
)
def test_ineligible_coupon_prices_at_zero(overrides, subtotal, reason):
    quote = coupon_service.price_coupon(_coupon(**overrides), subtotal)
    assert quote.eligible is False
    assert quote.discount_cents == 0
    assert quote.reason == reason


def test_checks_short_circuit_in_order():
    coupon = _coupon(is_active=False, expires_at=utcnow() - timedelta(days=1), min_order_value_cents=10**9)
    assert coupon_service.price_coupon(coupon, 100).reason == coupon_service.INELIGIBLE_INACTIVE


def test_future_expiry_and_remaining_uses_are_eligible():
    coupon = _coupon(expires_at=utcnow() + timedelta(days=1), usage_limit=3, used_count=2)
    assert coupon_service.price_coupon(coupon, 5000).eligible is True


def test_minimum_is_inclusive():
    assert coupon_service.price_coupon(_coupon(min_order_value_cents=5000), 5000).eligible is True


def test_missing_coupon():
    quote = coupon_service.price_coupon(None, 5000)
    assert quote.reason == coupon_service.INELIGIBLE_NOT_FOUND


class TestCouponAdmin:
    def test_create_normalizes_code(self, db_session):
        coupon = coupon_service.create_coupon({
            "code": " welcome10 ",
            "discount_type": "flat",
            "discount_value": 1000,
            "usage_limit": 100,
        })

        assert coupon.code == "WELCOME10"
        assert coupon.discount_type == CouponDiscountType.FLAT
        assert coupon_service.find_coupon("Welcome10").id == coupon.id

    def test_duplicate_code_rejected(self, db_session, make_coupon):
        make_coupon(code="SAVE20")
        with pytest.raises(ValidationError):
            coupon_service.create_coupon({"code": "save20", "discount_type": "PERCENTAGE", "discount_value": 5})

    @pytest.mark.parametrize(
        "data",
        [
            {"code": "", "discount_type": "FLAT", "discount_value": 100},
            {"code": "X", "discount_type": "BOGO", "discount_value": 100},
            {"code": "X", "discount_type": "PERCENTAGE", "discount_value": 101},
            {"code": "X", "discount_type": "FLAT", "discount_value": 0},
            {"code": "X", "discount_type": "FLAT", "discount_value": 100, "usage_limit": -1},
            {"code": "X", "discount_type": "FLAT", "discount_value": 100, "expires_at": "next week"},
            {"code": "X", "discount_type": "FLAT", "discount_value": 100, "is_active": "false"},
        ],
    )
    def test_invalid_definitions(self, db_session, data):
        with pytest.raises(ValidationError):
            coupon_service.create_coupon(data)

    def test_create_inactive(self, db_session):
        coupon = coupon_service.create_coupon(
            {"code": "later", "discount_type": "FLAT", "discount_value": 100, "is_active": False}
        )
        assert coupon.is_active is False

    def test_list_active_only(self, db_session, make_coupon):
        make_coupon(code="ON")
        make_coupon(code="OFF", is_active=False)

        assert [c.code for c in coupon_service.list_coupons()] == ["OFF", "ON"]
        assert [c.code for c in coupon_service.list_coupons(active_only=True)] == ["ON"]
