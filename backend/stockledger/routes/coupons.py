# backend/stockledger/routes/coupons.py
"""
Coupon administration routes.
"""
from flask import Blueprint, request

from ..decorators import engine_errors, require_actor
from ..validation import require_fields, require_json_object


coupons_bp = Blueprint("coupons", __name__, url_prefix="/api/coupons")


@coupons_bp.get("")
@engine_errors
def list_route():
    from ..services.coupon_service import list_coupons

    active_only = request.args.get("active", "").lower() in ("1", "true", "yes")
    return {"coupons": [c.to_dict() for c in list_coupons(active_only=active_only)]}, 200


@coupons_bp.post("")
@require_actor
@engine_errors
def create_route():
    """
    Body: {code, discount_type, discount_value, min_order_value_cents?,
           max_discount_cents?, expires_at?, usage_limit?, description?}
    """
    payload = require_json_object(request.get_json(silent=True))
    require_fields(payload, "code", "discount_type", "discount_value")

    from ..services.coupon_service import create_coupon

    coupon = create_coupon(payload)
    return {"coupon": coupon.to_dict()}, 201
