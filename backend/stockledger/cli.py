# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create demo warehouses, products, stock and a coupon (idempotent).
#
# Ledger inspection:
# - python -m flask ledger verify [--warehouse-id 1]
#   Replay ledger entries and compare with cached balances.
#
# Inventory inspection:
# - python -m flask inventory reconcile [--warehouse-id 1]
#   Compare cached stock with the movement log for every record.
#
# Settings:
# - python -m flask settings set-commission --bps 1200 --actor ops@example.com
#   Change the platform commission rate (basis points).

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Coupon, CouponDiscountType, Product, StockRecord, Warehouse


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for demo data.")


DEMO_WAREHOUSES = [
    {"code": "WH-NORTH", "name": "North Fulfilment", "serviceable_pincodes": ["110001", "110002"]},
    {"code": "WH-SOUTH", "name": "South Fulfilment", "serviceable_pincodes": ["560001", "560002"]},
]

DEMO_PRODUCTS = [
    {"sku": "TEA-001", "name": "Assam Tea 500g", "price_cents": 34900, "category_id": "beverages"},
    {"sku": "RICE-005", "name": "Basmati Rice 5kg", "price_cents": 79900, "category_id": "staples"},
    {"sku": "OIL-001", "name": "Groundnut Oil 1L", "price_cents": 21500, "category_id": "staples"},
]


@system_group.command('seed-demo')
@click.option('--stock', default=25, show_default=True, help='Units per product per warehouse')
@with_appcontext
def seed_demo(stock):
    """Create demo warehouses, products, stock and the SAVE20 coupon."""
    from .services.inventory_service import increment

    click.echo("START Seeding demo data...")

    warehouses = []
    for data in DEMO_WAREHOUSES:
        wh = db.session.query(Warehouse).filter_by(code=data["code"]).first()
        if not wh:
            wh = Warehouse(**data, is_active=True)
            db.session.add(wh)
            db.session.commit()
            click.echo(f"PASS Created warehouse {wh.code} (ID: {wh.id})")
        warehouses.append(wh)

    products = []
    for data in DEMO_PRODUCTS:
        product = db.session.query(Product).filter_by(sku=data["sku"]).first()
        if not product:
            product = Product(**data, is_active=True)
            db.session.add(product)
            db.session.commit()
            click.echo(f"PASS Created product {product.sku} (ID: {product.id})")
        products.append(product)

    for wh in warehouses:
        for product in products:
            exists = db.session.query(StockRecord.id).filter_by(
                warehouse_id=wh.id, product_id=product.id
            ).first()
            if exists:
                continue
            increment(wh.id, product.id, stock, actor="seed", note="Demo seed")
    click.echo(f"PASS Stocked {len(products)} products in {len(warehouses)} warehouses")

    if not db.session.query(Coupon).filter_by(code="SAVE20").first():
        db.session.add(Coupon(
            code="SAVE20",
            description="20% off, capped at 100.00",
            discount_type=CouponDiscountType.PERCENTAGE,
            discount_value=20,
            min_order_value_cents=0,
            max_discount_cents=10000,
            is_active=True,
        ))
        db.session.commit()
        click.echo("PASS Created coupon SAVE20")

    click.echo("DONE Demo data ready.")


@click.group('ledger')
def ledger_group():
    """Warehouse ledger inspection."""


@ledger_group.command('verify')
@click.option('--warehouse-id', type=int, default=None, help='Limit to one warehouse')
@with_appcontext
def verify_ledger_cli(warehouse_id):
    """Replay ledger entries against cached balances. Exits 1 on mismatch."""
    from .services.ledger_service import verify_ledger

    reports = verify_ledger(warehouse_id)
    failures = 0
    for r in reports:
        marker = "PASS" if r["ok"] else "FAIL"
        click.echo(
            f"{marker} warehouse {r['warehouse_id']}: cached={r['cached_balance_cents']} "
            f"replayed={r['replayed_balance_cents']} entries={r['entry_count']}"
        )
        if r["broken_entry_ids"]:
            click.echo(f"     broken chain at entries: {r['broken_entry_ids']}")
        if not r["ok"]:
            failures += 1

    if failures:
        raise SystemExit(1)


@click.group('inventory')
def inventory_group():
    """Inventory inspection."""


@inventory_group.command('reconcile')
@click.option('--warehouse-id', type=int, default=None, help='Limit to one warehouse')
@click.option('--central', is_flag=True, help='Only the central stock pool')
@with_appcontext
def reconcile_cli(warehouse_id, central):
    """Compare cached stock with the movement log. Exits 1 on mismatch."""
    from .services.inventory_service import reconcile_stock

    q = db.session.query(StockRecord)
    if central:
        q = q.filter(StockRecord.warehouse_id.is_(None))
    elif warehouse_id is not None:
        q = q.filter(StockRecord.warehouse_id == warehouse_id)

    failures = 0
    for record in q.order_by(StockRecord.warehouse_id, StockRecord.product_id).all():
        r = reconcile_stock(record.warehouse_id, record.product_id)
        if not r["ok"]:
            failures += 1
            click.echo(
                f"FAIL warehouse {r['warehouse_id'] or 'central'} product {r['product_id']}: "
                f"cached={r['cached_stock']} logged={r['logged_stock']}"
            )

    if failures:
        raise SystemExit(1)
    click.echo("PASS All stock records match their movement log")


@click.group('settings')
def settings_group():
    """Financial settings."""


@settings_group.command('set-commission')
@click.option('--bps', type=int, required=True, help='Commission rate in basis points (100 = 1%)')
@click.option('--actor', default='cli', show_default=True, help='Recorded in the audit log')
@with_appcontext
def set_commission_cli(bps, actor):
    from .exceptions import ValidationError
    from .services.settings_service import update_financial_settings

    try:
        settings = update_financial_settings({"commission_rate_bps": bps}, actor=actor)
    except ValidationError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Commission rate set to {settings.commission_rate_bps} bps")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(settings_group)
