from __future__ import annotations

from enum import Enum


class StockAdjustmentReason(str, Enum):
    RESTOCK = "RESTOCK"
    CORRECTION = "CORRECTION"
    DAMAGE = "DAMAGE"
    SHRINKAGE = "SHRINKAGE"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    SALE = "SALE"
    CANCELLATION = "CANCELLATION"
    OTHER = "OTHER"


class LedgerDirection(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class LedgerCategory(str, Enum):
    SALE = "SALE"
    COMMISSION = "COMMISSION"
    REFUND = "REFUND"
    COMMISSION_REVERSAL = "COMMISSION_REVERSAL"
    PAYOUT = "PAYOUT"


class CouponDiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FLAT = "FLAT"


class OrderStatus(str, Enum):
    CREATED = "Created"
    PENDING = "Pending"
    PAID = "Paid"
    PACKED = "Packed"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentMethod(str, Enum):
    COD = "COD"
    CARD = "CARD"
    UPI = "UPI"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PurchaseOrderStatus(str, Enum):
    DRAFT = "DRAFT"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"


class StockAdjustmentType(str, Enum):
    SET = "set"
    INCREMENT = "increment"
    DECREMENT = "decrement"


class AuditAction(str, Enum):
    ORDER_UPDATE = "ORDER_UPDATE"
    STOCK_ADJUSTMENT = "STOCK_ADJUSTMENT"
    STOCK_TRANSFER = "STOCK_TRANSFER"
    PURCHASE_ORDER_RECEIVE = "PURCHASE_ORDER_RECEIVE"
    PAYOUT = "PAYOUT"
    SYSTEM_CONFIG_UPDATE = "SYSTEM_CONFIG_UPDATE"


# Gateway-backed methods need a gateway order reference before persisting
GATEWAY_PAYMENT_METHODS = frozenset({PaymentMethod.CARD, PaymentMethod.UPI})

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def enum_column(enum_cls, length: int = 32):
    """Store enums by value as plain strings (no native DB enum type)."""
    from ..extensions import db

    return db.Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
