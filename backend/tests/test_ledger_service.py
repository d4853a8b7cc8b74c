"""
Warehouse ledger tests: sale/refund pairs, payouts and replay verification.
"""

import pytest

from stockledger.exceptions import InsufficientBalanceError, NotFoundError, ValidationError
from stockledger.models import AuditAction, AuditLog, LedgerCategory, LedgerDirection, LedgerEntry, Warehouse
from stockledger.services import ledger_service
from stockledger.services.settings_service import update_financial_settings


@pytest.fixture
def warehouse(make_warehouse):
    return make_warehouse(code="WH-LEDGER")


def _categories(entries):
    return [(e.direction, e.category, e.amount_cents) for e in entries]


def test_sale_writes_credit_then_commission_debit(db_session, warehouse):
    posting = ledger_service.record_sale(warehouse.id, 10000, "101")

    assert _categories(posting.entries) == [
        (LedgerDirection.CREDIT, LedgerCategory.SALE, 10000),
        (LedgerDirection.DEBIT, LedgerCategory.COMMISSION, 1000),
    ]
    assert posting.entries[1].rate_bps == 1000
    assert ledger_service.get_balance(warehouse.id) == 9000
    assert posting.balance_after_cents == 9000


def test_entries_chain_balances(db_session, warehouse):
    ledger_service.record_sale(warehouse.id, 10000, "101")
    ledger_service.record_sale(warehouse.id, 5000, "102")

    entries = ledger_service.list_entries(warehouse.id)
    previous_after = 0
    for entry in entries:
        assert entry.balance_before_cents == previous_after
        previous_after = entry.balance_after_cents
    assert previous_after == ledger_service.get_balance(warehouse.id) == 13500


def test_sale_is_recorded_once_per_order(db_session, warehouse):
    ledger_service.record_sale(warehouse.id, 10000, "101")
    again = ledger_service.record_sale(warehouse.id, 10000, "101")

    assert again.already_processed is True
    assert len(again.entries) == 2
    assert ledger_service.get_balance(warehouse.id) == 9000
    assert db_session.query(LedgerEntry).count() == 2


def test_commission_rounds_half_up(db_session, warehouse):
    posting = ledger_service.record_sale(warehouse.id, 55, "201")
    assert posting.entries[1].amount_cents == 6
    assert ledger_service.get_balance(warehouse.id) == 49


def test_injected_rate_reader(db_session, warehouse):
    posting = ledger_service.record_sale(warehouse.id, 333, "301", rate_reader=lambda: 1500)

    assert posting.entries[1].amount_cents == 50
    assert posting.entries[1].rate_bps == 1500


def test_sale_then_refund_nets_to_zero(db_session, warehouse):
    ledger_service.record_sale(warehouse.id, 10000, "401")
    refund = ledger_service.record_refund(warehouse.id, 10000, "401")

    assert _categories(refund.entries) == [
        (LedgerDirection.DEBIT, LedgerCategory.REFUND, 10000),
        (LedgerDirection.CREDIT, LedgerCategory.COMMISSION_REVERSAL, 1000),
    ]
    assert ledger_service.get_balance(warehouse.id) == 0
    assert ledger_service.verify_ledger(warehouse.id)[0]["ok"] is True


def test_refund_uses_the_current_rate(db_session, warehouse):
    ledger_service.record_sale(warehouse.id, 10000, "501")
    update_financial_settings({"commission_rate_bps": 2000}, actor="finance")

    ledger_service.record_refund(warehouse.id, 10000, "501")

    # 10000 - 1000 - 10000 + 2000
    assert ledger_service.get_balance(warehouse.id) == 1000


def test_refund_is_recorded_once_per_order(db_session, warehouse):
    ledger_service.record_refund(warehouse.id, 4000, "601")
    again = ledger_service.record_refund(warehouse.id, 4000, "601")

    assert again.already_processed is True
    assert ledger_service.get_balance(warehouse.id) == -3600


def test_no_warehouse_skips_the_ledger(db_session, warehouse):
    posting = ledger_service.record_sale(None, 10000, "701")

    assert posting.entries == []
    assert posting.balance_after_cents is None
    assert db_session.query(LedgerEntry).count() == 0


def test_unknown_warehouse(db_session):
    with pytest.raises(NotFoundError):
        ledger_service.record_sale(9999, 100, "801")


def test_negative_amount_rejected(db_session, warehouse):
    with pytest.raises(ValidationError):
        ledger_service.record_sale(warehouse.id, -1, "802")


class TestPayout:
    @pytest.fixture
    def funded(self, warehouse):
        ledger_service.record_sale(warehouse.id, 300, "900", rate_reader=lambda: 0)
        return warehouse

    def test_payout_above_balance_is_rejected(self, db_session, funded):
        with pytest.raises(InsufficientBalanceError) as exc:
            ledger_service.record_payout(funded.id, 500, "PAY-1", actor="finance")

        assert exc.value.balance_cents == 300
        assert exc.value.requested_cents == 500
        assert ledger_service.get_balance(funded.id) == 300
        assert db_session.query(LedgerEntry).filter_by(category=LedgerCategory.PAYOUT).count() == 0

    def test_payout_debits_balance_and_audits(self, db_session, funded):
        posting = ledger_service.record_payout(funded.id, 200, "PAY-2", actor="finance")

        entry = posting.entries[0]
        assert entry.direction == LedgerDirection.DEBIT
        assert entry.category == LedgerCategory.PAYOUT
        assert entry.transaction_id == "PAYOUT-PAY-2"
        assert (entry.balance_before_cents, entry.balance_after_cents) == (300, 100)
        assert ledger_service.get_balance(funded.id) == 100

        audit = db_session.query(AuditLog).filter_by(action=AuditAction.PAYOUT).one()
        assert audit.performed_by == "finance"
        assert audit.metadata_json["amount_cents"] == 200

    def test_whole_balance_can_be_paid_out(self, db_session, funded):
        ledger_service.record_payout(funded.id, 300, "PAY-3", actor="finance")
        assert ledger_service.get_balance(funded.id) == 0

    def test_repeated_reference_pays_once(self, db_session, funded):
        first = ledger_service.record_payout(funded.id, 200, "PAY-4", actor="finance")
        second = ledger_service.record_payout(funded.id, 200, "PAY-4", actor="finance")

        assert second.already_processed is True
        assert second.entries[0].id == first.entries[0].id
        assert ledger_service.get_balance(funded.id) == 100

    def test_invalid_payouts(self, db_session, funded):
        with pytest.raises(ValidationError):
            ledger_service.record_payout(funded.id, 0, "PAY-5", actor="finance")
        with pytest.raises(ValidationError):
            ledger_service.record_payout(funded.id, 100, "  ", actor="finance")


class TestVerify:
    def test_reports_every_warehouse(self, db_session, make_warehouse):
        a = make_warehouse(code="WH-A")
        b = make_warehouse(code="WH-B")
        ledger_service.record_sale(a.id, 1000, "1")

        reports = ledger_service.verify_ledger()

        assert [r["warehouse_id"] for r in reports] == [a.id, b.id]
        assert all(r["ok"] for r in reports)
        assert reports[0]["entry_count"] == 2
        assert reports[1]["entry_count"] == 0

    def test_detects_balance_written_outside_the_ledger(self, db_session, warehouse):
        ledger_service.record_sale(warehouse.id, 1000, "1")
        wh = db_session.get(Warehouse, warehouse.id)
        wh.ledger_balance_cents = 5
        db_session.commit()

        report = ledger_service.verify_ledger(warehouse.id)[0]
        assert report["ok"] is False
        assert report["cached_balance_cents"] == 5
        assert report["replayed_balance_cents"] == 900
