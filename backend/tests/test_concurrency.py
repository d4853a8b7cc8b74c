"""
Concurrency tests against a file-backed SQLite database.

Each worker thread pushes its own app context, so every thread gets its own
session and connection and the database's write lock is what serializes them.
"""
import os
import tempfile
import threading
import unittest

from stockledger import create_app
from stockledger.exceptions import InsufficientBalanceError, InsufficientStockError
from stockledger.extensions import db
from stockledger.models import Coupon, CouponDiscountType, Order, Product, StockMovement, Warehouse
from stockledger.services import inventory_service, ledger_service, order_service
from stockledger.services.payment_gateway import StubPaymentGateway, compute_signature


SECRET = "concurrency_secret"
ADDRESS = {"line1": "1 Main Road", "city": "Delhi", "pincode": "110001"}


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.gateway = StubPaymentGateway(key_secret=SECRET)
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "PAYMENT_GATEWAY_INSTANCE": self.gateway,
            "TRANSACTION_RETRY_ATTEMPTS": 5,
            "TRANSACTION_RETRY_BACKOFF": 0.01,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            warehouse = Warehouse(
                code="WH-CONCUR",
                name="Concurrency Warehouse",
                serviceable_pincodes=["110001"],
                is_active=True,
                ledger_balance_cents=0,
            )
            product = Product(sku="CONCUR-1", name="Concurrent Product", price_cents=1000, is_active=True)
            db.session.add_all([warehouse, product])
            db.session.commit()
            self.warehouse_id = warehouse.id
            self.product_id = product.id

            inventory_service.increment(self.warehouse_id, self.product_id, 5, actor="seed", note="Seed inventory")

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, targets):
        results = []
        lock = threading.Lock()

        def wrap(target):
            def worker():
                with self.app.app_context():
                    try:
                        outcome = target()
                        with lock:
                            results.append(outcome)
                    except Exception as exc:
                        with lock:
                            results.append(exc)
                    finally:
                        db.session.remove()
            return worker

        threads = [threading.Thread(target=wrap(t)) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def _create_order(self, quantity, payment_method="COD", coupon_code=None):
        order = order_service.create_order(
            user_id="user-1",
            items=[{"product_id": self.product_id, "quantity": quantity}],
            address=ADDRESS,
            payment_method=payment_method,
            coupon_code=coupon_code,
        )
        return order.id

    def test_concurrent_cod_confirmations_do_not_oversell(self):
        with self.app.app_context():
            first = self._create_order(3)
            second = self._create_order(3)

        results = self._run_threads([
            lambda: order_service.confirm_cod_order(first, actor="ops"),
            lambda: order_service.confirm_cod_order(second, actor="ops"),
        ])

        confirmed = [r for r in results if isinstance(r, order_service.PaymentConfirmation)]
        rejected = [r for r in results if isinstance(r, InsufficientStockError)]
        self.assertEqual(len(confirmed), 1, results)
        self.assertEqual(len(rejected), 1, results)

        with self.app.app_context():
            self.assertEqual(inventory_service.get_stock(self.warehouse_id, self.product_id), 2)
            self.assertTrue(inventory_service.reconcile_stock(self.warehouse_id, self.product_id)["ok"])
            committed = db.session.query(Order).filter(Order.stock_committed.is_(True)).count()
            self.assertEqual(committed, 1)

    def test_coupon_usage_limit_under_contention(self):
        with self.app.app_context():
            coupon = Coupon(
                code="ONCE",
                discount_type=CouponDiscountType.FLAT,
                discount_value=100,
                min_order_value_cents=0,
                usage_limit=1,
                used_count=0,
                is_active=True,
            )
            db.session.add(coupon)
            db.session.commit()

        results = self._run_threads(
            [lambda: self._create_order(1, payment_method="CARD", coupon_code="ONCE") for _ in range(5)]
        )

        self.assertFalse([r for r in results if isinstance(r, Exception)], results)
        with self.app.app_context():
            coupon = db.session.query(Coupon).filter_by(code="ONCE").one()
            self.assertEqual(coupon.used_count, 1)

            orders = db.session.query(Order).all()
            self.assertEqual(len(orders), 5)
            discounted = [o for o in orders if o.discount_cents > 0]
            self.assertEqual(len(discounted), 1)
            self.assertEqual(discounted[0].coupon_code, "ONCE")
            self.assertEqual(discounted[0].total_cents, 900)
            # Every order carries a gateway reference for its final amount
            amounts = {o.gateway_order_id: o.total_cents for o in orders}
            self.assertNotIn(None, amounts)
            by_id = {g.gateway_order_id: g.amount_cents for g in self.gateway.created}
            for gateway_order_id, total in amounts.items():
                self.assertEqual(by_id[gateway_order_id], total)

    def test_concurrent_payouts_never_overdraw(self):
        with self.app.app_context():
            # 1111 less 10% commission (111) leaves 1000
            ledger_service.record_sale(self.warehouse_id, 1111, "fund-1")
            self.assertEqual(ledger_service.get_balance(self.warehouse_id), 1000)

        results = self._run_threads([
            (lambda ref=ref: ledger_service.record_payout(self.warehouse_id, 400, ref, actor="finance"))
            for ref in ("PAY-1", "PAY-2", "PAY-3", "PAY-4")
        ])

        paid = [r for r in results if isinstance(r, ledger_service.LedgerPosting)]
        rejected = [r for r in results if isinstance(r, InsufficientBalanceError)]
        self.assertEqual(len(paid), 2, results)
        self.assertEqual(len(rejected), 2, results)

        with self.app.app_context():
            self.assertEqual(ledger_service.get_balance(self.warehouse_id), 200)
            reports = ledger_service.verify_ledger(self.warehouse_id)
            self.assertTrue(all(r["ok"] for r in reports))

    def test_mixed_ledger_and_transfer_traffic(self):
        with self.app.app_context():
            south = Warehouse(
                code="WH-SOUTH",
                name="South Warehouse",
                serviceable_pincodes=["560001"],
                is_active=True,
                ledger_balance_cents=0,
            )
            db.session.add(south)
            db.session.commit()
            south_id = south.id
            inventory_service.increment(south_id, self.product_id, 5, actor="seed", note="Seed inventory")
            ledger_service.record_sale(self.warehouse_id, 1111, "ORDER-1")

        north_id = self.warehouse_id
        item = [{"product_id": self.product_id, "quantity": 1}]
        targets = [
            # 2222 less 222 commission
            lambda: ledger_service.record_sale(north_id, 2222, "ORDER-2"),
            # -1111 plus 111 reversed commission
            lambda: ledger_service.record_refund(north_id, 1111, "ORDER-1"),
            lambda: ledger_service.record_payout(north_id, 100, "PAY-1", actor="finance") and "paid",
            lambda: ledger_service.record_payout(north_id, 100, "PAY-2", actor="finance") and "paid",
        ]
        targets += [lambda: inventory_service.transfer(north_id, south_id, item, actor="ops") for _ in range(3)]
        targets += [lambda: inventory_service.transfer(south_id, north_id, item, actor="ops") for _ in range(3)]

        results = self._run_threads(targets)

        # A payout may lose to the refund and be rejected; nothing else may fail
        unexpected = [r for r in results if isinstance(r, Exception) and not isinstance(r, InsufficientBalanceError)]
        self.assertFalse(unexpected, results)
        paid_out = 100 * results.count("paid")

        with self.app.app_context():
            self.assertEqual(ledger_service.get_balance(north_id), 1000 + 2000 - 1000 - paid_out)
            self.assertTrue(ledger_service.verify_ledger(north_id)[0]["ok"])

            north_stock = inventory_service.get_stock(north_id, self.product_id)
            south_stock = inventory_service.get_stock(south_id, self.product_id)
            self.assertEqual(north_stock + south_stock, 10)
            self.assertTrue(inventory_service.reconcile_stock(north_id, self.product_id)["ok"])
            self.assertTrue(inventory_service.reconcile_stock(south_id, self.product_id)["ok"])

    def test_duplicate_payment_confirmation_commits_stock_once(self):
        with self.app.app_context():
            order_id = self._create_order(2, payment_method="CARD")
            order = order_service.get_order(order_id)
            signature = compute_signature(order.gateway_order_id, "pay_1", SECRET)

        results = self._run_threads([
            lambda: order_service.confirm_payment(order_id, "pay_1", signature, actor="gateway-hook")
            for _ in range(2)
        ])

        self.assertFalse([r for r in results if isinstance(r, Exception)], results)
        self.assertEqual(sorted(r.already_processed for r in results), [False, True])

        with self.app.app_context():
            self.assertEqual(inventory_service.get_stock(self.warehouse_id, self.product_id), 3)
            sale_movements = (
                db.session.query(StockMovement)
                .filter(StockMovement.reference == order_service.order_reference(order_id))
                .count()
            )
            self.assertEqual(sale_movements, 1)


if __name__ == "__main__":
    unittest.main()
