import pytest

from stockledger.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from stockledger.models import (
    AuditAction,
    AuditLog,
    PurchaseOrderStatus,
    StockAdjustmentReason,
    StockMovement,
)
from stockledger.services import inventory_service, purchase_order_service


@pytest.fixture
def setup(make_warehouse, make_product):
    warehouse = make_warehouse(code="WH-PO")
    tea = make_product(sku="TEA-001", price_cents=34900)
    oil = make_product(sku="OIL-001", price_cents=21500)
    return warehouse, tea, oil


def _draft(setup, actor="buyer"):
    warehouse, tea, oil = setup
    return purchase_order_service.create_purchase_order(
        "Acme Traders",
        warehouse.id,
        [
            {"product_id": tea.id, "quantity": 10, "unit_cost_cents": 250},
            {"product_id": oil.id, "quantity": 5, "unit_cost_cents": 100},
        ],
        actor=actor,
    )


def test_create_draft(db_session, setup):
    po = _draft(setup)

    assert po.status == PurchaseOrderStatus.DRAFT
    assert po.po_number == f"PO-{po.id:06d}"
    assert po.total_cost_cents == 3000
    assert [(l.quantity, l.unit_cost_cents) for l in po.lines] == [(10, 250), (5, 100)]
    assert po.created_by == "buyer"


def test_duplicate_lines_are_merged(db_session, setup):
    warehouse, tea, _ = setup
    po = purchase_order_service.create_purchase_order(
        "Acme Traders",
        warehouse.id,
        [
            {"product_id": tea.id, "quantity": 2, "unit_cost_cents": 250},
            {"product_id": tea.id, "quantity": 3, "unit_cost_cents": 999},
        ],
        actor="buyer",
    )
    assert [(l.product_id, l.quantity, l.unit_cost_cents) for l in po.lines] == [(tea.id, 5, 250)]


def test_receive_restocks_every_line(db_session, setup):
    warehouse, tea, oil = setup
    po = _draft(setup)

    result = purchase_order_service.receive_purchase_order(po.id, actor="clerk")

    assert result.already_processed is False
    assert result.purchase_order.status == PurchaseOrderStatus.RECEIVED
    assert result.purchase_order.received_by == "clerk"
    assert result.purchase_order.received_at is not None
    assert inventory_service.get_stock(warehouse.id, tea.id) == 10
    assert inventory_service.get_stock(warehouse.id, oil.id) == 5

    movements = db_session.query(StockMovement).filter_by(reference=po.po_number).all()
    assert len(movements) == 2
    assert {m.reason for m in movements} == {StockAdjustmentReason.RESTOCK}
    assert {m.note for m in movements} == {"Received from Acme Traders"}
    assert db_session.query(AuditLog).filter_by(action=AuditAction.PURCHASE_ORDER_RECEIVE).count() == 1


def test_second_receipt_changes_nothing(db_session, setup):
    warehouse, tea, _ = setup
    po = _draft(setup)
    purchase_order_service.receive_purchase_order(po.id, actor="clerk")

    again = purchase_order_service.receive_purchase_order(po.id, actor="clerk")

    assert again.already_processed is True
    assert inventory_service.get_stock(warehouse.id, tea.id) == 10
    assert db_session.query(AuditLog).filter_by(action=AuditAction.PURCHASE_ORDER_RECEIVE).count() == 1


def test_cancel_draft(db_session, setup):
    po = _draft(setup)

    cancelled = purchase_order_service.cancel_purchase_order(po.id, actor="buyer", reason="supplier out of stock")

    assert cancelled.status == PurchaseOrderStatus.CANCELLED
    assert cancelled.cancellation_reason == "supplier out of stock"
    with pytest.raises(InvalidTransitionError):
        purchase_order_service.receive_purchase_order(po.id, actor="clerk")
    # Cancelling again is harmless
    assert purchase_order_service.cancel_purchase_order(po.id, actor="buyer").status == PurchaseOrderStatus.CANCELLED


def test_received_order_cannot_be_cancelled(db_session, setup):
    po = _draft(setup)
    purchase_order_service.receive_purchase_order(po.id, actor="clerk")

    with pytest.raises(InvalidTransitionError):
        purchase_order_service.cancel_purchase_order(po.id, actor="buyer")


def test_invalid_purchase_orders(db_session, setup):
    warehouse, tea, _ = setup
    items = [{"product_id": tea.id, "quantity": 1}]

    with pytest.raises(ValidationError):
        purchase_order_service.create_purchase_order("  ", warehouse.id, items, actor="buyer")
    with pytest.raises(NotFoundError):
        purchase_order_service.create_purchase_order("Acme", 9999, items, actor="buyer")
    with pytest.raises(NotFoundError):
        purchase_order_service.create_purchase_order(
            "Acme", warehouse.id, [{"product_id": 9999, "quantity": 1}], actor="buyer"
        )
    with pytest.raises(ValidationError):
        purchase_order_service.create_purchase_order(
            "Acme", warehouse.id, [{"product_id": tea.id, "quantity": 1, "unit_cost_cents": -5}], actor="buyer"
        )


def test_list_by_status(db_session, setup):
    first = _draft(setup)
    second = _draft(setup)
    purchase_order_service.receive_purchase_order(first.id, actor="clerk")

    drafts = purchase_order_service.list_purchase_orders(status=PurchaseOrderStatus.DRAFT)
    assert [po.id for po in drafts] == [second.id]
    assert [po.id for po in purchase_order_service.list_purchase_orders()] == [second.id, first.id]


def test_unknown_purchase_order(db_session):
    with pytest.raises(NotFoundError):
        purchase_order_service.receive_purchase_order(9999, actor="clerk")
