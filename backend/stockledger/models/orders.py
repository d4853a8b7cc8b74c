from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import OrderStatus, PaymentMethod, PaymentStatus, enum_column


class Order(db.Model):
    """
    Customer order.

    Created once by order_service.create_order(); afterwards only
    order_service writes status and payment fields. Lines are a price
    snapshot ("price at booking"). The timeline only grows.

    stock_committed records that decrement_for_order() ran for this order,
    so cancellation knows whether units have to go back on the shelf.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)

    # NULL: fulfilled from the central stock pool, no warehouse ledger
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)

    status = db.Column(enum_column(OrderStatus), nullable=False, default=OrderStatus.CREATED, index=True)

    # Financials (minor units)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="INR")

    coupon_code = db.Column(db.String(64), nullable=True, index=True)

    # Payment
    payment_method = db.Column(enum_column(PaymentMethod, length=16), nullable=False)
    payment_status = db.Column(enum_column(PaymentStatus, length=16), nullable=False, default=PaymentStatus.PENDING)
    gateway_order_id = db.Column(db.String(128), nullable=True, index=True)
    gateway_payment_id = db.Column(db.String(128), nullable=True)
    signature_verified = db.Column(db.Boolean, nullable=False, default=False)
    payment_failure_reason = db.Column(db.String(255), nullable=True)
    receipt = db.Column(db.String(64), nullable=True)

    shipping_address = db.Column(db.JSON, nullable=True)

    stock_committed = db.Column(db.Boolean, nullable=False, default=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    lines = db.relationship(
        "OrderLine",
        backref="order",
        order_by="OrderLine.position",
        cascade="all, delete-orphan",
        lazy=True,
    )
    timeline = db.relationship(
        "OrderTimelineEntry",
        backref="order",
        order_by="OrderTimelineEntry.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def transaction_id(self) -> str:
        """Key shared by every ledger entry this order produces."""
        return str(self.id)

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} total={self.total_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "warehouse_id": self.warehouse_id,
            "status": self.status.value,
            "items": [line.to_dict() for line in self.lines],
            "financials": {
                "subtotal_cents": self.subtotal_cents,
                "tax_cents": self.tax_cents,
                "delivery_fee_cents": self.delivery_fee_cents,
                "discount_cents": self.discount_cents,
                "total_cents": self.total_cents,
                "currency": self.currency,
            },
            "payment": {
                "method": self.payment_method.value,
                "status": self.payment_status.value,
                "gateway_order_id": self.gateway_order_id,
                "gateway_payment_id": self.gateway_payment_id,
                "signature_verified": self.signature_verified,
                "failure_reason": self.payment_failure_reason,
            },
            "coupon_code": self.coupon_code,
            "shipping_address": self.shipping_address,
            "stock_committed": self.stock_committed,
            "timeline": [entry.to_dict() for entry in self.timeline],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderLine(db.Model):
    __tablename__ = "order_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "product_id", name="uq_order_lines_order_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    price_at_booking_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    @property
    def line_total_cents(self) -> int:
        return self.price_at_booking_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "price_at_booking_cents": self.price_at_booking_cents,
            "quantity": self.quantity,
            "line_total_cents": self.line_total_cents,
        }


class OrderTimelineEntry(db.Model):
    """Append-only order history row."""
    __tablename__ = "order_timeline_entries"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    state = db.Column(enum_column(OrderStatus), nullable=False)
    actor = db.Column(db.String(128), nullable=False)
    metadata_json = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "actor": self.actor,
            "metadata": self.metadata_json or {},
            "timestamp": to_utc_z(self.occurred_at),
        }
