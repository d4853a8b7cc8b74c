"""
Pytest fixtures for stockledger backend tests.

Provides the app on in-memory SQLite, a per-test table wipe, and factories
for warehouses, products, stock and coupons.
"""

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Coupon, CouponDiscountType, Product, Warehouse
from stockledger.services.inventory_service import increment
from stockledger.services.payment_gateway import StubPaymentGateway, compute_signature


TEST_GATEWAY_SECRET = "test_gateway_secret"


@pytest.fixture(scope='session')
def gateway():
    """Offline gateway shared by the app; signatures use TEST_GATEWAY_SECRET."""
    return StubPaymentGateway(key_secret=TEST_GATEWAY_SECRET)


@pytest.fixture(scope='session')
def app(gateway):
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'PAYMENT_GATEWAY_INSTANCE': gateway,
        'TRANSACTION_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app, gateway):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        gateway.created.clear()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_warehouse(db_session):
    def _make(code="WH-1", pincodes=("110001",), is_active=True, name=None):
        warehouse = Warehouse(
            code=code,
            name=name or f"Warehouse {code}",
            serviceable_pincodes=list(pincodes),
            is_active=is_active,
            ledger_balance_cents=0,
        )
        db_session.add(warehouse)
        db_session.commit()
        return warehouse

    return _make


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(sku="SKU-1", price_cents=1000, name=None, is_active=True):
        product = Product(
            sku=sku,
            name=name or f"Product {sku}",
            price_cents=price_cents,
            is_active=is_active,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def stock(db_session):
    """stock(warehouse_id, product_id, quantity): seed stock through the engine."""
    def _stock(warehouse_id, product_id, quantity):
        return increment(warehouse_id, product_id, quantity, actor="seed", note="Test seed")

    return _stock


@pytest.fixture(scope='function')
def make_coupon(db_session):
    def _make(code="SAVE20", discount_type=CouponDiscountType.PERCENTAGE, discount_value=20, **kwargs):
        coupon = Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=discount_value,
            min_order_value_cents=kwargs.pop("min_order_value_cents", 0),
            max_discount_cents=kwargs.pop("max_discount_cents", None),
            usage_limit=kwargs.pop("usage_limit", None),
            used_count=kwargs.pop("used_count", 0),
            is_active=kwargs.pop("is_active", True),
            **kwargs,
        )
        db_session.add(coupon)
        db_session.commit()
        return coupon

    return _make


@pytest.fixture(scope='function')
def catalog(make_warehouse, make_product, stock):
    """One serviceable warehouse with two stocked products (5 units each)."""
    warehouse = make_warehouse(code="WH-NORTH", pincodes=("110001", "110002"))
    tea = make_product(sku="TEA-001", price_cents=25000, name="Assam Tea")
    rice = make_product(sku="RICE-005", price_cents=10000, name="Basmati Rice")
    stock(warehouse.id, tea.id, 5)
    stock(warehouse.id, rice.id, 5)
    return {"warehouse": warehouse, "tea": tea, "rice": rice}


def sign(order, payment_id, secret=TEST_GATEWAY_SECRET):
    """Signature the gateway would send for this order and payment."""
    return compute_signature(order.gateway_order_id, payment_id, secret)


ADDRESS = {"line1": "1 Main Road", "city": "Delhi", "pincode": "110001"}
