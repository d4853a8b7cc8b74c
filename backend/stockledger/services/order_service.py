# Overview: Service-layer operations for customer orders; pricing, payment confirmation and the status state machine.

"""
Order Lifecycle

================================================================================
STATE MACHINE
================================================================================

    Created -> Pending | Paid -> Packed -> Shipped -> Delivered
    Cancelled is reachable from every non-terminal state.

    Created:   order persisted, prices snapshotted, coupon usage counted.
               No stock is held.
    Pending:   COD order confirmed; stock committed. (Gateway orders may also
               be parked here by an admin while awaiting payment.)
    Paid:      gateway payment verified; stock committed. Reached only through
               confirm_payment(), exactly once.
    Packed / Shipped: fulfilment progress.
    Delivered: terminal; the warehouse SALE/COMMISSION pair is recorded here.
    Cancelled: terminal; committed, unshipped stock is returned, and a
               successful payment is refunded in the ledger.

RULES:
1. Stock is checked and decremented only at confirmation, in the same
   transaction that sets Paid/Pending.
2. Coupon usage is counted in the order-creation transaction.
3. Gateway calls never happen while a transaction is open.
4. Every transition appends a timeline entry; the timeline only grows.
================================================================================
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..exceptions import (
    InvalidTransitionError,
    NotFoundError,
    SignatureInvalidError,
    ValidationError,
)
from ..extensions import db
from ..models import (
    AuditAction,
    GATEWAY_PAYMENT_METHODS,
    TERMINAL_ORDER_STATUSES,
    Order,
    OrderLine,
    OrderStatus,
    OrderTimelineEntry,
    PaymentMethod,
    PaymentStatus,
    Product,
    StockAdjustmentReason,
    Warehouse,
)
from ..money import apply_bps
from .audit_service import log_admin_action
from .concurrency import begin_write, lock_for_update, run_with_retry
from .coupon_service import _redeem_inner, find_coupon, normalize_code, price_coupon
from .inventory_service import _decrement_for_order_inner, _increment_inner, normalize_items
from .ledger_service import _record_refund_inner, _record_sale_inner
from .payment_gateway import GatewayOrderRequest, current_gateway, verify_signature
from .settings_service import get_financial_settings


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.PACKED, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.PACKED, OrderStatus.CANCELLED}),
    OrderStatus.PACKED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Statuses at which committed stock is still in the warehouse
RESTOCKABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.PACKED})

SIGNATURE_MISMATCH = "Signature Mismatch"


@dataclass(frozen=True)
class OrderQuote:
    subtotal_cents: int
    tax_cents: int
    delivery_fee_cents: int
    discount_cents: int
    total_cents: int
    currency: str
    coupon_code: str | None = None
    coupon_reason: str | None = None


@dataclass
class PaymentConfirmation:
    order: Order
    already_processed: bool = False


def order_reference(order_id: int) -> str:
    return f"ORDER-{order_id}"


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    if from_status == to_status:
        return True
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def coerce_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    raw = str(value or "").strip()
    for status in OrderStatus:
        if raw.lower() in (status.value.lower(), status.name.lower()):
            return status
    raise ValidationError(
        f"Invalid status '{value}'. Must be one of: {', '.join(s.value for s in OrderStatus)}"
    )


def coerce_payment_method(value) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(
            f"Invalid payment method '{value}'. Must be one of: {', '.join(m.value for m in PaymentMethod)}"
        )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_order(order_id: int, *, lock: bool = False) -> Order:
    q = db.session.query(Order).filter(Order.id == order_id)
    if lock:
        q = lock_for_update(q)
    order = q.first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
    return order


def list_orders(
    *,
    user_id: str | None = None,
    status: OrderStatus | None = None,
    warehouse_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Order]:
    q = db.session.query(Order)
    if user_id:
        q = q.filter(Order.user_id == user_id)
    if status is not None:
        q = q.filter(Order.status == status)
    if warehouse_id is not None:
        q = q.filter(Order.warehouse_id == warehouse_id)
    return q.order_by(Order.id.desc()).offset(offset).limit(limit).all()


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

def quote_order(subtotal_cents: int, *, settings=None, coupon=None, coupon_code: str | None = None) -> OrderQuote:
    """
    Price an order from its server-side subtotal.

    Tax applies to the pre-discount subtotal. total = subtotal + tax +
    delivery - discount. An ineligible coupon prices at zero discount.
    """
    settings = settings or get_financial_settings()

    tax = apply_bps(subtotal_cents, settings.tax_rate_bps or 0) if settings.tax_enabled else 0
    delivery = (settings.delivery_fee_cents or 0) if settings.delivery_fee_enabled else 0

    discount = 0
    applied_code = None
    coupon_reason = None
    if coupon_code:
        quote = price_coupon(coupon, subtotal_cents)
        if quote.eligible:
            discount = quote.discount_cents
            applied_code = coupon.code
        else:
            coupon_reason = quote.reason

    return OrderQuote(
        subtotal_cents=subtotal_cents,
        tax_cents=tax,
        delivery_fee_cents=delivery,
        discount_cents=discount,
        total_cents=subtotal_cents + tax + delivery - discount,
        currency=settings.currency,
        coupon_code=applied_code,
        coupon_reason=coupon_reason,
    )


def _load_priced_lines(items) -> list[tuple[Product, int]]:
    lines = []
    for item in normalize_items(items):
        product = db.session.get(Product, item.product_id)
        if product is None:
            raise NotFoundError(f"Product {item.product_id} not found", product_id=item.product_id)
        if not product.is_active:
            raise ValidationError(
                f"Product {product.name} is not available",
                product_id=product.id,
            )
        lines.append((product, item.quantity))
    return lines


def resolve_warehouse(warehouse_id: int | None, address: dict | None) -> int | None:
    """
    Pick the fulfilling warehouse.

    An explicit warehouse must exist and be active. Otherwise the first
    active warehouse serving the shipping pincode wins; with none, the
    order draws from the central pool (None).
    """
    if warehouse_id is not None:
        warehouse = db.session.get(Warehouse, warehouse_id)
        if warehouse is None:
            raise NotFoundError(f"Warehouse {warehouse_id} not found", warehouse_id=warehouse_id)
        if not warehouse.is_active:
            raise ValidationError(f"Warehouse {warehouse.code} is not active", warehouse_id=warehouse_id)
        return warehouse.id

    pincode = (address or {}).get("pincode")
    if not pincode:
        return None
    warehouses = (
        db.session.query(Warehouse)
        .filter(Warehouse.is_active.is_(True))
        .order_by(Warehouse.id.asc())
        .all()
    )
    for warehouse in warehouses:
        if warehouse.serves(pincode):
            return warehouse.id
    return None


def _request_gateway_order(quote: OrderQuote, receipt: str, user_id: str) -> str:
    gateway = current_gateway()
    gateway_order = gateway.create_order(
        GatewayOrderRequest(
            amount_cents=quote.total_cents,
            currency=quote.currency,
            receipt=receipt,
            notes={"user_id": user_id},
        )
    )
    return gateway_order.gateway_order_id


def _append_timeline(order: Order, state: OrderStatus, actor: str, metadata: dict | None = None) -> None:
    order.timeline.append(
        OrderTimelineEntry(state=state, actor=actor, metadata_json=metadata or {})
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def create_order(
    user_id: str,
    items,
    address: dict,
    payment_method,
    coupon_code: str | None = None,
    warehouse_id: int | None = None,
) -> Order:
    """
    Price and persist a new order in Created / payment PENDING.

    Card/UPI orders get a gateway order reference before the transaction
    opens. Stock is not touched.
    """
    user_id = str(user_id or "").strip()
    if not user_id:
        raise ValidationError("user_id is required")
    if not isinstance(address, dict) or not address:
        raise ValidationError("shipping address is required")
    method = coerce_payment_method(payment_method)
    coupon_code = normalize_code(coupon_code)

    priced = _load_priced_lines(items)
    subtotal = sum(product.price_cents * qty for product, qty in priced)
    resolved_warehouse_id = resolve_warehouse(warehouse_id, address)

    preliminary = quote_order(subtotal, coupon=find_coupon(coupon_code), coupon_code=coupon_code)
    receipt = f"rcpt_{uuid.uuid4().hex[:16]}"

    gateway_order_id = None
    if method in GATEWAY_PAYMENT_METHODS:
        gateway_order_id = _request_gateway_order(preliminary, receipt, user_id)

    def _op():
        begin_write()
        coupon = find_coupon(coupon_code, lock=True) if coupon_code else None
        quote = quote_order(subtotal, coupon=coupon, coupon_code=coupon_code)
        if quote.coupon_code:
            _redeem_inner(coupon)

        order = Order(
            user_id=user_id,
            warehouse_id=resolved_warehouse_id,
            status=OrderStatus.CREATED,
            subtotal_cents=quote.subtotal_cents,
            tax_cents=quote.tax_cents,
            delivery_fee_cents=quote.delivery_fee_cents,
            discount_cents=quote.discount_cents,
            total_cents=quote.total_cents,
            currency=quote.currency,
            coupon_code=quote.coupon_code,
            payment_method=method,
            payment_status=PaymentStatus.PENDING,
            # The preliminary gateway order is only valid for the amount it was created with
            gateway_order_id=gateway_order_id if quote.total_cents == preliminary.total_cents else None,
            receipt=receipt,
            shipping_address=address,
            stock_committed=False,
        )
        for position, (product, qty) in enumerate(priced):
            order.lines.append(
                OrderLine(
                    position=position,
                    product_id=product.id,
                    name=product.name,
                    price_at_booking_cents=product.price_cents,
                    quantity=qty,
                )
            )
        _append_timeline(order, OrderStatus.CREATED, user_id, {"user_id": user_id})
        db.session.add(order)
        db.session.commit()
        return order, quote

    order, quote = run_with_retry(_op)

    if quote.coupon_reason:
        current_app.logger.info(
            "Coupon %s ignored for order %s: %s", coupon_code, order.id, quote.coupon_reason
        )

    if method in GATEWAY_PAYMENT_METHODS and order.gateway_order_id is None:
        # Total moved between the preliminary quote and commit (coupon lost a race)
        current_app.logger.warning(
            "Order %s total changed from %s to %s; requesting a new gateway order",
            order.id, preliminary.total_cents, quote.total_cents,
        )
        new_gateway_order_id = _request_gateway_order(quote, receipt, user_id)

        def _attach():
            begin_write()
            fresh = get_order(order.id, lock=True)
            fresh.gateway_order_id = new_gateway_order_id
            db.session.commit()
            return fresh

        order = run_with_retry(_attach)

    current_app.logger.info(
        "Order %s created for user %s: total=%s method=%s warehouse=%s",
        order.id, user_id, order.total_cents, method.value, order.warehouse_id,
    )
    return order


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------

def _commit_stock(order: Order, actor: str) -> None:
    """Decrement every line inside the caller's transaction."""
    if order.stock_committed:
        return
    _decrement_for_order_inner(
        order.warehouse_id,
        [{"product_id": line.product_id, "quantity": line.quantity} for line in order.lines],
        reference=order_reference(order.id),
        actor=actor,
    )
    order.stock_committed = True


def _is_payment_settled(order: Order) -> bool:
    return order.payment_status in (PaymentStatus.SUCCESS, PaymentStatus.REFUNDED)


def confirm_payment(order_id: int, gateway_payment_id: str, signature: str, *, actor: str = "system") -> PaymentConfirmation:
    """
    Verify a gateway payment and commit the order's stock.

    Idempotent: an order already paid returns already_processed=True with
    no further side effects. A bad signature marks the payment FAILED and
    raises SignatureInvalidError; no stock moves.
    """
    gateway_payment_id = str(gateway_payment_id or "").strip()
    if not gateway_payment_id:
        raise ValidationError("payment id is required")

    order = get_order(order_id)
    if _is_payment_settled(order) or order.status == OrderStatus.PAID:
        return PaymentConfirmation(order=order, already_processed=True)
    if order.payment_method not in GATEWAY_PAYMENT_METHODS:
        raise ValidationError("Cash-on-delivery orders are confirmed through COD confirmation", order_id=order.id)
    if order.status not in (OrderStatus.CREATED, OrderStatus.PENDING):
        raise InvalidTransitionError(
            f"Cannot confirm payment for an order in status {order.status.value}",
            order_id=order.id,
            status=order.status.value,
        )

    secret = current_gateway().key_secret
    if not verify_signature(order.gateway_order_id, gateway_payment_id, signature, secret):
        def _mark_failed():
            begin_write()
            fresh = get_order(order_id, lock=True)
            if not _is_payment_settled(fresh):
                fresh.payment_status = PaymentStatus.FAILED
                fresh.payment_failure_reason = SIGNATURE_MISMATCH
                fresh.gateway_payment_id = gateway_payment_id
            db.session.commit()

        run_with_retry(_mark_failed)
        current_app.logger.warning(
            "Payment signature mismatch for order %s (payment %s)", order_id, gateway_payment_id
        )
        raise SignatureInvalidError("Payment signature verification failed", order_id=order_id)

    def _op():
        begin_write()
        order = get_order(order_id, lock=True)
        if _is_payment_settled(order) or order.status == OrderStatus.PAID:
            db.session.commit()
            return PaymentConfirmation(order=order, already_processed=True)
        if order.status not in (OrderStatus.CREATED, OrderStatus.PENDING):
            raise InvalidTransitionError(
                f"Cannot confirm payment for an order in status {order.status.value}",
                order_id=order.id,
                status=order.status.value,
            )

        _commit_stock(order, actor)

        order.status = OrderStatus.PAID
        order.payment_status = PaymentStatus.SUCCESS
        order.gateway_payment_id = gateway_payment_id
        order.signature_verified = True
        order.payment_failure_reason = None
        _append_timeline(
            order,
            OrderStatus.PAID,
            actor,
            {"method": order.payment_method.value, "payment_id": gateway_payment_id},
        )
        db.session.commit()
        return PaymentConfirmation(order=order)

    result = run_with_retry(_op)
    if not result.already_processed:
        current_app.logger.info("Order %s paid (payment %s)", order_id, gateway_payment_id)
    return result


def confirm_cod_order(order_id: int, *, actor: str) -> PaymentConfirmation:
    """Commit stock for a cash-on-delivery order and move it to Pending."""
    def _op():
        begin_write()
        order = get_order(order_id, lock=True)
        if order.payment_method != PaymentMethod.COD:
            raise ValidationError("Only cash-on-delivery orders can be COD-confirmed", order_id=order.id)
        if order.stock_committed and order.status != OrderStatus.CANCELLED:
            db.session.commit()
            return PaymentConfirmation(order=order, already_processed=True)
        if order.status != OrderStatus.CREATED:
            raise InvalidTransitionError(
                f"Cannot confirm a COD order in status {order.status.value}",
                order_id=order.id,
                status=order.status.value,
            )

        _commit_stock(order, actor)
        order.status = OrderStatus.PENDING
        _append_timeline(order, OrderStatus.PENDING, actor, {"method": PaymentMethod.COD.value})
        db.session.commit()
        return PaymentConfirmation(order=order)

    result = run_with_retry(_op)
    if not result.already_processed:
        current_app.logger.info("COD order %s confirmed by %s", order_id, actor)
    return result


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

def _apply_delivery(order: Order) -> None:
    _record_sale_inner(order.warehouse_id, order.total_cents, order.transaction_id)
    if order.payment_method == PaymentMethod.COD:
        order.payment_status = PaymentStatus.SUCCESS


def _apply_cancellation(order: Order, actor: str) -> dict:
    effects = {"restocked": False, "refunded": False}

    if order.stock_committed and order.status in RESTOCKABLE_STATUSES:
        for line in order.lines:
            _increment_inner(
                order.warehouse_id,
                line.product_id,
                line.quantity,
                reason=StockAdjustmentReason.CANCELLATION,
                actor=actor,
                reference=order_reference(order.id),
            )
        order.stock_committed = False
        effects["restocked"] = True

    if order.payment_status == PaymentStatus.SUCCESS:
        _record_refund_inner(order.warehouse_id, order.total_cents, order.transaction_id)
        order.payment_status = PaymentStatus.REFUNDED
        effects["refunded"] = True

    return effects


def update_status(order_id: int, new_status, *, actor: str, metadata: dict | None = None) -> Order:
    """
    Administrative transition.

    - Same status: no-op.
    - Pending on an unconfirmed COD order commits its stock.
    - Packed requires committed stock.
    - Delivered records the warehouse sale (and settles COD payment).
    - Cancelled returns unshipped stock and refunds a successful payment.
    Paid is only reachable through confirm_payment().
    """
    new_status = coerce_status(new_status)

    def _op():
        begin_write()
        order = get_order(order_id, lock=True)
        current = order.status
        if current == new_status:
            db.session.commit()
            return order, None

        if current in TERMINAL_ORDER_STATUSES:
            raise InvalidTransitionError(
                f"Order {order.id} is {current.value} and cannot change",
                order_id=order.id,
                status=current.value,
            )
        if new_status == OrderStatus.PAID:
            raise InvalidTransitionError(
                "Orders become Paid only through payment confirmation",
                order_id=order.id,
                status=current.value,
            )
        if not can_transition(current, new_status):
            raise InvalidTransitionError(
                f"Cannot move order from {current.value} to {new_status.value}",
                order_id=order.id,
                status=current.value,
                requested=new_status.value,
            )

        effects: dict = {}
        if new_status == OrderStatus.PENDING and order.payment_method == PaymentMethod.COD:
            _commit_stock(order, actor)
        elif new_status == OrderStatus.PACKED and not order.stock_committed:
            raise InvalidTransitionError(
                "Order stock has not been committed; confirm the order first",
                order_id=order.id,
                status=current.value,
            )
        elif new_status == OrderStatus.DELIVERED:
            _apply_delivery(order)
        elif new_status == OrderStatus.CANCELLED:
            effects = _apply_cancellation(order, actor)

        order.status = new_status
        timeline_metadata = dict(metadata or {})
        timeline_metadata["previous"] = current.value
        _append_timeline(order, new_status, actor, timeline_metadata)

        log_admin_action(
            action=AuditAction.ORDER_UPDATE,
            performed_by=actor,
            target_type="ORDER",
            target_id=order.id,
            details=f"Status {current.value} -> {new_status.value}",
            metadata={"from": current.value, "to": new_status.value, **effects},
        )
        db.session.commit()
        return order, current

    # IntegrityError: a cancellation restock raced another first-time stock record
    order, previous = run_with_retry(_op, retry_on=(IntegrityError,))
    if previous is not None:
        current_app.logger.info(
            "Order %s: %s -> %s by %s", order.id, previous.value, new_status.value, actor
        )
    return order


# COD orders settle at handover, so they may skip the intermediate fulfilment steps
COD_COMPLETABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PACKED, OrderStatus.SHIPPED})


def complete_cod_order(order_id: int, *, actor: str) -> Order:
    """
    Mark a confirmed COD order Delivered.

    Payment settles to SUCCESS and the warehouse sale is booked in the same
    transaction. Repeating the call on a delivered order is a no-op.
    """
    def _op():
        begin_write()
        order = get_order(order_id, lock=True)
        if order.payment_method != PaymentMethod.COD:
            raise ValidationError("Only cash-on-delivery orders can be completed this way", order_id=order.id)
        current = order.status
        if current == OrderStatus.DELIVERED:
            db.session.commit()
            return order, None
        if current not in COD_COMPLETABLE_STATUSES or not order.stock_committed:
            raise InvalidTransitionError(
                f"Cannot complete a COD order in status {current.value}",
                order_id=order.id,
                status=current.value,
            )

        _apply_delivery(order)
        order.status = OrderStatus.DELIVERED
        _append_timeline(
            order,
            OrderStatus.DELIVERED,
            actor,
            {"previous": current.value, "method": PaymentMethod.COD.value},
        )
        log_admin_action(
            action=AuditAction.ORDER_UPDATE,
            performed_by=actor,
            target_type="ORDER",
            target_id=order.id,
            details=f"COD order completed from {current.value}",
            metadata={"from": current.value, "to": OrderStatus.DELIVERED.value},
        )
        db.session.commit()
        return order, current

    order, previous = run_with_retry(_op)
    if previous is not None:
        current_app.logger.info("COD order %s delivered by %s", order.id, actor)
    return order
