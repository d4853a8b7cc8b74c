from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import PurchaseOrderStatus, StockAdjustmentReason, enum_column


class StockRecord(db.Model):
    """
    Current stock for one (warehouse, product) pair.

    warehouse_id NULL is the platform's central pool (orders placed without
    a warehouse). A missing row means zero stock. `stock` never goes
    negative; every change is explained by a StockMovement row.
    """
    __tablename__ = "stock_records"
    __table_args__ = (
        db.UniqueConstraint("warehouse_id", "product_id", name="uq_stock_records_warehouse_product"),
        # NULLs never collide in the unique constraint above
        db.Index(
            "uq_stock_records_central_product",
            "product_id",
            unique=True,
            sqlite_where=db.text("warehouse_id IS NULL"),
            postgresql_where=db.text("warehouse_id IS NULL"),
        ),
        db.CheckConstraint("stock >= 0", name="ck_stock_records_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    stock = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<StockRecord warehouse={self.warehouse_id} product={self.product_id} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "warehouse_id": self.warehouse_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "stock": self.stock,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock audit trail.

    For a given (warehouse, product), SUM(change) equals StockRecord.stock
    for every movement written since the record was created. Rows are never
    updated or deleted.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_warehouse_product_created", "warehouse_id", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    change = db.Column(db.Integer, nullable=False)
    stock_after = db.Column(db.Integer, nullable=False)
    reason = db.Column(enum_column(StockAdjustmentReason), nullable=False, index=True)

    actor = db.Column(db.String(128), nullable=False)
    note = db.Column(db.String(255), nullable=True)

    # e.g. "ORDER-12", "PO-000003", "TRANSFER-4"
    reference = db.Column(db.String(64), nullable=True, index=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("stock_transfers.id"), nullable=True, index=True)
    # Caller-supplied token used to deduplicate ambiguous retries
    idempotency_key = db.Column(db.String(128), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "warehouse_id": self.warehouse_id,
            "product_id": self.product_id,
            "change": self.change,
            "stock_after": self.stock_after,
            "reason": self.reason.value,
            "actor": self.actor,
            "note": self.note,
            "reference": self.reference,
            "transfer_id": self.transfer_id,
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at),
        }


class StockTransfer(db.Model):
    """
    Warehouse-to-warehouse transfer document.

    There is no in-transit state: the document and all of its movements are
    written in one transaction or not at all. Lines are the TRANSFER_OUT
    movements at the source.
    """
    __tablename__ = "stock_transfers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    source_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    dest_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    idempotency_key = db.Column(db.String(128), nullable=True, unique=True)
    actor = db.Column(db.String(128), nullable=False)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    movements = db.relationship(
        "StockMovement",
        backref="transfer",
        order_by="StockMovement.id",
        lazy=True,
    )

    @property
    def reference(self) -> str:
        return f"TRANSFER-{self.id}"

    def to_dict(self) -> dict:
        lines = [
            {"product_id": m.product_id, "quantity": -m.change}
            for m in self.movements
            if m.reason == StockAdjustmentReason.TRANSFER_OUT
        ]
        return {
            "id": self.id,
            "reference": self.reference,
            "source_warehouse_id": self.source_warehouse_id,
            "dest_warehouse_id": self.dest_warehouse_id,
            "idempotency_key": self.idempotency_key,
            "actor": self.actor,
            "note": self.note,
            "lines": lines,
            "created_at": to_utc_z(self.created_at),
        }


class PurchaseOrder(db.Model):
    """
    Supplier purchase order.

    DRAFT -> RECEIVED (stock incremented at warehouse_id), or DRAFT -> CANCELLED.
    RECEIVED is terminal and guards against double receipt.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    po_number = db.Column(db.String(32), nullable=True, unique=True)
    supplier_name = db.Column(db.String(255), nullable=False)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    status = db.Column(enum_column(PurchaseOrderStatus), nullable=False, default=PurchaseOrderStatus.DRAFT, index=True)
    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.String(128), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    received_by = db.Column(db.String(128), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancelled_by = db.Column(db.String(128), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship(
        "PurchaseOrderLine",
        backref="purchase_order",
        order_by="PurchaseOrderLine.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    warehouse = db.relationship("Warehouse")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "po_number": self.po_number,
            "supplier_name": self.supplier_name,
            "warehouse_id": self.warehouse_id,
            "status": self.status.value,
            "total_cost_cents": self.total_cost_cents,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "received_by": self.received_by,
            "received_at": to_utc_z(self.received_at),
            "cancelled_by": self.cancelled_by,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "lines": [line.to_dict() for line in self.lines],
        }


class PurchaseOrderLine(db.Model):
    __tablename__ = "purchase_order_lines"
    __table_args__ = (
        db.UniqueConstraint("purchase_order_id", "product_id", name="uq_po_lines_po_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "line_cost_cents": self.quantity * self.unit_cost_cents,
        }
