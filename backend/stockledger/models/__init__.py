from .enums import (
    GATEWAY_PAYMENT_METHODS,
    TERMINAL_ORDER_STATUSES,
    AuditAction,
    CouponDiscountType,
    LedgerCategory,
    LedgerDirection,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PurchaseOrderStatus,
    StockAdjustmentReason,
    StockAdjustmentType,
)
from .catalog import Product, Warehouse
from .inventory import StockRecord, StockMovement, StockTransfer, PurchaseOrder, PurchaseOrderLine
from .orders import Order, OrderLine, OrderTimelineEntry
from .promotions import Coupon
from .ledger import LedgerEntry
from .settings import FinancialSettings
from .audit import AuditLog

__all__ = [
    'AuditAction', 'CouponDiscountType', 'LedgerCategory', 'LedgerDirection',
    'OrderStatus', 'PaymentMethod', 'PaymentStatus', 'PurchaseOrderStatus',
    'StockAdjustmentReason', 'StockAdjustmentType',
    'GATEWAY_PAYMENT_METHODS', 'TERMINAL_ORDER_STATUSES',
    'Product', 'Warehouse',
    'StockRecord', 'StockMovement', 'StockTransfer', 'PurchaseOrder', 'PurchaseOrderLine',
    'Order', 'OrderLine', 'OrderTimelineEntry',
    'Coupon',
    'LedgerEntry',
    'FinancialSettings',
    'AuditLog',
]
