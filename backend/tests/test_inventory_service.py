"""
Inventory service tests.

Covers stock counters, the movement log, all-or-nothing order decrements,
transfers and admin adjustments.
"""

import pytest

from stockledger.exceptions import (
    InsufficientStockError,
    NegativeStockError,
    NotFoundError,
    SameWarehouseError,
    ValidationError,
)
from stockledger.models import (
    AuditAction,
    AuditLog,
    StockAdjustmentReason,
    StockMovement,
    StockRecord,
    StockTransfer,
)
from stockledger.services import inventory_service


@pytest.fixture
def two_warehouses(make_warehouse, make_product, stock):
    north = make_warehouse(code="WH-N", pincodes=("110001",))
    south = make_warehouse(code="WH-S", pincodes=("560001",))
    product = make_product(sku="OIL-001", price_cents=21500, name="Groundnut Oil")
    stock(north.id, product.id, 10)
    return north, south, product


class TestIncrementAndReads:
    def test_increment_creates_record_and_movement(self, db_session, make_warehouse, make_product):
        wh = make_warehouse()
        product = make_product()

        movement = inventory_service.increment(wh.id, product.id, 10, actor="ops")

        assert inventory_service.get_stock(wh.id, product.id) == 10
        assert movement.change == 10
        assert movement.stock_after == 10
        assert movement.reason == StockAdjustmentReason.RESTOCK
        assert movement.actor == "ops"

    def test_missing_record_reads_as_zero(self, db_session, make_warehouse, make_product):
        wh = make_warehouse()
        product = make_product()
        assert inventory_service.get_stock(wh.id, product.id) == 0

    def test_repeated_idempotency_key_increments_once(self, db_session, make_warehouse, make_product):
        wh = make_warehouse()
        product = make_product()

        first = inventory_service.increment(wh.id, product.id, 4, actor="ops", idempotency_key="restock-1")
        second = inventory_service.increment(wh.id, product.id, 4, actor="ops", idempotency_key="restock-1")

        assert first.id == second.id
        assert inventory_service.get_stock(wh.id, product.id) == 4
        assert db_session.query(StockMovement).count() == 1

    def test_central_pool_is_separate_from_warehouses(self, db_session, make_warehouse, make_product):
        wh = make_warehouse()
        product = make_product()

        inventory_service.increment(None, product.id, 3, actor="ops")

        assert inventory_service.get_stock(None, product.id) == 3
        assert inventory_service.get_stock(wh.id, product.id) == 0
        assert [r.stock for r in inventory_service.list_stock(None)] == [3]
        assert inventory_service.list_stock(wh.id) == []

    def test_increment_rejects_non_positive_quantity(self, db_session, make_warehouse, make_product):
        wh = make_warehouse()
        product = make_product()
        with pytest.raises(ValidationError):
            inventory_service.increment(wh.id, product.id, 0, actor="ops")
        with pytest.raises(ValidationError):
            inventory_service.increment(wh.id, product.id, True, actor="ops")

    def test_increment_unknown_product(self, db_session, make_warehouse):
        wh = make_warehouse()
        with pytest.raises(NotFoundError):
            inventory_service.increment(wh.id, 9999, 1, actor="ops")
        assert db_session.query(StockRecord).count() == 0

    def test_list_movements_filters_and_orders_newest_first(self, db_session, two_warehouses):
        north, _, product = two_warehouses
        inventory_service.decrement(north.id, product.id, 2, actor="ops")

        rows = inventory_service.list_movements(warehouse_id=north.id, product_id=product.id)
        assert [m.reason for m in rows] == [StockAdjustmentReason.DAMAGE, StockAdjustmentReason.RESTOCK]

        damaged = inventory_service.list_movements(reason=StockAdjustmentReason.DAMAGE)
        assert len(damaged) == 1
        assert damaged[0].change == -2


class TestOrderDecrement:
    def test_decrements_every_item(self, db_session, catalog):
        wh, tea, rice = catalog["warehouse"], catalog["tea"], catalog["rice"]

        movements = inventory_service.decrement_for_order(
            wh.id,
            [{"product_id": tea.id, "quantity": 3}, {"product_id": rice.id, "quantity": 1}],
            reference="ORDER-1",
        )

        assert inventory_service.get_stock(wh.id, tea.id) == 2
        assert inventory_service.get_stock(wh.id, rice.id) == 4
        assert {m.reason for m in movements} == {StockAdjustmentReason.SALE}
        assert {m.reference for m in movements} == {"ORDER-1"}

    def test_one_short_item_aborts_the_whole_order(self, db_session, catalog):
        wh, tea, rice = catalog["warehouse"], catalog["tea"], catalog["rice"]

        with pytest.raises(InsufficientStockError) as exc:
            inventory_service.decrement_for_order(
                wh.id,
                [{"product_id": tea.id, "quantity": 3}, {"product_id": rice.id, "quantity": 6}],
            )

        assert exc.value.product_id == rice.id
        assert exc.value.product_name == "Basmati Rice"
        assert exc.value.available == 5
        assert exc.value.requested == 6
        assert inventory_service.get_stock(wh.id, tea.id) == 5
        assert inventory_service.get_stock(wh.id, rice.id) == 5
        assert db_session.query(StockMovement).filter_by(reason=StockAdjustmentReason.SALE).count() == 0

    def test_unknown_product_is_not_found(self, db_session, catalog):
        wh, tea = catalog["warehouse"], catalog["tea"]

        with pytest.raises(NotFoundError) as exc:
            inventory_service.decrement_for_order(
                wh.id,
                [{"product_id": tea.id, "quantity": 1}, {"product_id": 9999, "quantity": 1}],
            )

        assert exc.value.details["product_id"] == 9999
        assert inventory_service.get_stock(wh.id, tea.id) == 5

    def test_duplicate_lines_are_merged_before_checking(self, db_session, catalog):
        wh, tea = catalog["warehouse"], catalog["tea"]

        with pytest.raises(InsufficientStockError) as exc:
            inventory_service.decrement_for_order(
                wh.id,
                [{"product_id": tea.id, "quantity": 3}, {"product_id": tea.id, "quantity": 3}],
            )
        assert exc.value.requested == 6
        assert inventory_service.get_stock(wh.id, tea.id) == 5

    def test_exact_stock_can_be_sold(self, db_session, catalog):
        wh, tea = catalog["warehouse"], catalog["tea"]
        inventory_service.decrement_for_order(wh.id, [{"product_id": tea.id, "quantity": 5}])
        assert inventory_service.get_stock(wh.id, tea.id) == 0

    def test_empty_items_rejected(self, db_session, catalog):
        with pytest.raises(ValidationError):
            inventory_service.decrement_for_order(catalog["warehouse"].id, [])


class TestTransfer:
    def test_moves_stock_between_warehouses(self, db_session, two_warehouses):
        north, south, product = two_warehouses

        result = inventory_service.transfer(
            north.id, south.id, [{"product_id": product.id, "quantity": 4}], actor="ops", note="rebalance"
        )

        assert result.already_processed is False
        assert inventory_service.get_stock(north.id, product.id) == 6
        assert inventory_service.get_stock(south.id, product.id) == 4

        doc = result.transfer
        movements = db_session.query(StockMovement).filter_by(transfer_id=doc.id).order_by(StockMovement.id).all()
        assert [(m.warehouse_id, m.change, m.reason) for m in movements] == [
            (north.id, -4, StockAdjustmentReason.TRANSFER_OUT),
            (south.id, 4, StockAdjustmentReason.TRANSFER_IN),
        ]
        assert {m.reference for m in movements} == {f"TRANSFER-{doc.id}"}
        assert doc.to_dict()["lines"] == [{"product_id": product.id, "quantity": 4}]
        assert db_session.query(AuditLog).filter_by(action=AuditAction.STOCK_TRANSFER).count() == 1

    def test_same_warehouse_rejected(self, db_session, two_warehouses):
        north, _, product = two_warehouses
        with pytest.raises(SameWarehouseError):
            inventory_service.transfer(north.id, north.id, [{"product_id": product.id, "quantity": 1}], actor="ops")
        assert inventory_service.get_stock(north.id, product.id) == 10

    def test_shortfall_changes_neither_side(self, db_session, two_warehouses):
        north, south, product = two_warehouses

        with pytest.raises(InsufficientStockError):
            inventory_service.transfer(north.id, south.id, [{"product_id": product.id, "quantity": 11}], actor="ops")

        assert inventory_service.get_stock(north.id, product.id) == 10
        assert inventory_service.get_stock(south.id, product.id) == 0
        assert db_session.query(StockTransfer).count() == 0

    def test_unknown_destination(self, db_session, two_warehouses):
        north, _, product = two_warehouses
        with pytest.raises(NotFoundError):
            inventory_service.transfer(north.id, 9999, [{"product_id": product.id, "quantity": 1}], actor="ops")
        assert inventory_service.get_stock(north.id, product.id) == 10

    def test_repeated_idempotency_key_returns_original(self, db_session, two_warehouses):
        north, south, product = two_warehouses
        items = [{"product_id": product.id, "quantity": 3}]

        first = inventory_service.transfer(north.id, south.id, items, actor="ops", idempotency_key="xfer-1")
        second = inventory_service.transfer(north.id, south.id, items, actor="ops", idempotency_key="xfer-1")

        assert second.already_processed is True
        assert second.transfer.id == first.transfer.id
        assert inventory_service.get_stock(north.id, product.id) == 7
        assert inventory_service.get_stock(south.id, product.id) == 3


class TestAdjustments:
    def test_set_absolute_logs_the_difference(self, db_session, two_warehouses):
        north, _, product = two_warehouses

        movement = inventory_service.set_absolute(north.id, product.id, 7, actor="counter")

        assert movement.change == -3
        assert movement.reason == StockAdjustmentReason.CORRECTION
        assert inventory_service.get_stock(north.id, product.id) == 7

    def test_set_absolute_unchanged_logs_nothing(self, db_session, two_warehouses):
        north, _, product = two_warehouses
        before = db_session.query(StockMovement).count()

        assert inventory_service.set_absolute(north.id, product.id, 10, actor="counter") is None
        assert db_session.query(StockMovement).count() == before

    def test_set_absolute_below_zero_rejected(self, db_session, two_warehouses):
        north, _, product = two_warehouses
        with pytest.raises(NegativeStockError):
            inventory_service.set_absolute(north.id, product.id, -1, actor="counter")

    def test_decrement_cannot_go_negative(self, db_session, two_warehouses):
        north, _, product = two_warehouses
        with pytest.raises(NegativeStockError):
            inventory_service.decrement(north.id, product.id, 11, actor="ops")
        assert inventory_service.get_stock(north.id, product.id) == 10

    def test_adjust_stock_audits_in_the_same_commit(self, db_session, two_warehouses):
        north, _, product = two_warehouses

        result = inventory_service.adjust_stock(
            north.id, product.id, 5, adjustment_type="increment", actor="ops@example.com", note="late delivery"
        )

        assert result.stock == 15
        assert result.movement.reason == StockAdjustmentReason.RESTOCK
        audit = db_session.query(AuditLog).filter_by(action=AuditAction.STOCK_ADJUSTMENT).one()
        assert audit.performed_by == "ops@example.com"
        assert audit.target_id == f"{north.id}:{product.id}"
        assert audit.metadata_json["movement_id"] == result.movement.id

    def test_adjust_stock_decrement_with_explicit_reason(self, db_session, two_warehouses):
        north, _, product = two_warehouses

        result = inventory_service.adjust_stock(
            north.id, product.id, 2, adjustment_type="decrement", reason="shrinkage", actor="ops"
        )

        assert result.stock == 8
        assert result.movement.reason == StockAdjustmentReason.SHRINKAGE

    def test_adjust_stock_failure_writes_no_audit(self, db_session, two_warehouses):
        north, _, product = two_warehouses
        with pytest.raises(NegativeStockError):
            inventory_service.adjust_stock(north.id, product.id, 50, adjustment_type="decrement", actor="ops")
        assert db_session.query(AuditLog).filter_by(action=AuditAction.STOCK_ADJUSTMENT).count() == 0

    def test_adjust_stock_repeated_key(self, db_session, two_warehouses):
        north, _, product = two_warehouses

        inventory_service.adjust_stock(north.id, product.id, 3, actor="ops", idempotency_key="adj-1")
        again = inventory_service.adjust_stock(north.id, product.id, 3, actor="ops", idempotency_key="adj-1")

        assert again.already_processed is True
        assert again.stock == 13

    def test_adjust_stock_unknown_type_and_reason(self, db_session, two_warehouses):
        north, _, product = two_warehouses
        with pytest.raises(ValidationError):
            inventory_service.adjust_stock(north.id, product.id, 1, adjustment_type="bogus", actor="ops")
        with pytest.raises(ValidationError):
            inventory_service.adjust_stock(north.id, product.id, 1, reason="theft", actor="ops")


class TestReconcile:
    def test_movement_log_matches_cached_stock(self, db_session, two_warehouses):
        north, south, product = two_warehouses
        inventory_service.transfer(north.id, south.id, [{"product_id": product.id, "quantity": 4}], actor="ops")
        inventory_service.decrement(north.id, product.id, 1, actor="ops")

        for wid in (north.id, south.id):
            report = inventory_service.reconcile_stock(wid, product.id)
            assert report["ok"] is True

        assert inventory_service.reconcile_stock(north.id, product.id)["cached_stock"] == 5

    def test_detects_a_counter_written_outside_the_engine(self, db_session, two_warehouses):
        north, _, product = two_warehouses
        record = db_session.query(StockRecord).filter_by(warehouse_id=north.id, product_id=product.id).one()
        record.stock = 99
        db_session.commit()

        report = inventory_service.reconcile_stock(north.id, product.id)
        assert report["ok"] is False
        assert report["cached_stock"] == 99
        assert report["logged_stock"] == 10
