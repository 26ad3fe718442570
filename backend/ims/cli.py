# Overview: Flask CLI command groups for bootstrap, stock inspection, and billing maintenance.

# backend/ims/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "ims:create_app".
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (idempotent; use Alembic migrations in production).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a demo warehouse pair, supplier, customer and products with stock.
#
# Stock inspection:
# - python -m flask stock show --sku WIDGET-1
#   Quantity per warehouse with LOW/CRITICAL status.
# - python -m flask stock low [--warehouse-id 1]
#   Records at or below their reorder level.
# - python -m flask stock valuation [--warehouse-id 1]
#   Inventory value at cost.
# - python -m flask stock stats --warehouse-id 1
#   Units, value, low/out-of-stock counts and capacity use for one warehouse.
# - python -m flask stock transfer --sku WIDGET-1 --from 1 --to 2 --quantity 5
#   Move stock between warehouses (retries on concurrent modification).
#
# Billing maintenance:
# - python -m flask billing mark-overdue [--as-of 2025-01-31]
#   Move unpaid invoices past their due date to OVERDUE.

import click
from flask.cli import with_appcontext

from .errors import IMSError
from .extensions import db
from .logging_config import bind_context, clear_context
from .models import Warehouse
from .services import catalog_service, invoice_service, stock_ledger_service, transfer_service
from .services.concurrency import run_with_retry
from .time_utils import parse_iso_date


def _format_cents(cents: int) -> str:
    return f"{cents / 100:,.2f}"


def _fail(exc: IMSError):
    raise click.ClickException(f"{exc.code}: {exc.message}")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("PASS Database tables created.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create demo master data and opening stock (skips if already seeded)."""
    bind_context(command="seed-demo")
    try:
        if db.session.query(Warehouse).filter_by(code="MAIN").first():
            click.echo("WARN  Demo data already present, skipping...")
            return

        main = catalog_service.create_warehouse("MAIN", "Main Warehouse", city="Springfield")
        overflow = catalog_service.create_warehouse("OVERFLOW", "Overflow Warehouse", city="Shelbyville")
        click.echo(f"PASS Created warehouses: {main.code} (ID: {main.id}), {overflow.code} (ID: {overflow.id})")

        supplier = catalog_service.create_supplier("ACME", "Acme Supplies", email="orders@acme.example")
        customer = catalog_service.create_customer("jane@example.com", "Jane", "Doe")
        click.echo(f"PASS Created supplier {supplier.code} and customer {customer.email}")

        demo_products = [
            ("WIDGET-1", "Widget", 1999, 850, 50),
            ("GADGET-1", "Gadget", 4999, 2500, 8),
            ("GIZMO-1", "Gizmo", 999, 400, 3),
        ]
        for sku, name, price, cost, opening in demo_products:
            product = catalog_service.create_product(sku, name, price, cost_price_cents=cost)
            stock_ledger_service.add_stock(
                product.id,
                main.id,
                opening,
                stock_ledger_service.MOVEMENT_TYPE_RECEIPT,
                reason="Opening balance",
            )
            click.echo(f"PASS Product {sku}: {opening} on hand at {main.code}")
    except IMSError as exc:
        _fail(exc)
    finally:
        clear_context()


@click.group('stock')
def stock_group():
    """Stock inspection commands."""


@stock_group.command('show')
@click.option('--sku', required=True, help='Product SKU')
@with_appcontext
def show_stock(sku):
    """Quantity of a product at every warehouse."""
    try:
        product = catalog_service.get_product_by_sku(sku)
    except IMSError as exc:
        _fail(exc)

    records = stock_ledger_service.list_stock_records(product_id=product.id)
    click.echo(f"{product.sku} - {product.name} (reorder at {product.reorder_level}, critical at {product.min_stock_level})")
    if not records:
        click.echo("  (no stock records)")
    for record in records:
        status = stock_ledger_service.stock_status(product.id, record.quantity)
        click.echo(f"  warehouse {record.warehouse_id}: {record.quantity} [{status}] v{record.version_id}")
    click.echo(f"  total: {stock_ledger_service.get_total_quantity(product.id)}")


@stock_group.command('low')
@click.option('--warehouse-id', type=int, help='Limit to one warehouse')
@with_appcontext
def low_stock(warehouse_id):
    """Records at or below their reorder level."""
    rows = stock_ledger_service.list_low_stock(warehouse_id)
    if not rows:
        click.echo("PASS No low stock.")
        return
    for row in rows:
        click.echo(
            f"{row['status']:<8} {row['sku']:<16} warehouse {row['warehouse_id']}: "
            f"{row['quantity']} (reorder {row['reorder_level']}, min {row['min_stock_level']})"
        )


@stock_group.command('valuation')
@click.option('--warehouse-id', type=int, help='Limit to one warehouse')
@with_appcontext
def valuation(warehouse_id):
    """Inventory value at cost."""
    value = stock_ledger_service.inventory_value_cents(warehouse_id)
    scope = f"warehouse {warehouse_id}" if warehouse_id else "all warehouses"
    click.echo(f"Inventory value ({scope}): {_format_cents(value)}")


@stock_group.command('stats')
@click.option('--warehouse-id', type=int, required=True, help='Warehouse ID')
@with_appcontext
def stats(warehouse_id):
    """Stock summary for one warehouse."""
    try:
        summary = stock_ledger_service.warehouse_statistics(warehouse_id)
    except IMSError as exc:
        _fail(exc)

    click.echo(f"{summary['warehouse_name']} (id {summary['warehouse_id']})")
    click.echo(f"  products: {summary['total_products']}, units: {summary['total_units']}")
    click.echo(f"  value: {_format_cents(summary['total_value_cents'])}")
    click.echo(f"  low: {summary['low_stock_products']}, out: {summary['out_of_stock_products']}")
    if summary["capacity_utilization_percent"] is not None:
        click.echo(f"  capacity used: {summary['capacity_utilization_percent']}%")


@stock_group.command('transfer')
@click.option('--sku', required=True, help='Product SKU')
@click.option('--from', 'from_warehouse_id', type=int, required=True, help='Source warehouse ID')
@click.option('--to', 'to_warehouse_id', type=int, required=True, help='Destination warehouse ID')
@click.option('--quantity', type=int, required=True, help='Units to move')
@click.option('--reason', help='Optional reason')
@with_appcontext
def transfer_stock(sku, from_warehouse_id, to_warehouse_id, quantity, reason):
    """Move stock between warehouses."""
    bind_context(command="stock.transfer", sku=sku)
    try:
        product = catalog_service.get_product_by_sku(sku)
        result = run_with_retry(
            lambda: transfer_service.transfer(
                product.id, from_warehouse_id, to_warehouse_id, quantity, reason=reason
            )
        )
    except IMSError as exc:
        _fail(exc)
    finally:
        clear_context()

    click.echo(
        f"PASS Moved {quantity} x {product.sku}: source now {result['from_new_quantity']}, "
        f"destination now {result['to_new_quantity']} (movement {result['movement_id']})"
    )


@click.group('billing')
def billing_group():
    """Billing maintenance commands."""


@billing_group.command('mark-overdue')
@click.option('--as-of', help='Date (YYYY-MM-DD), defaults to today')
@with_appcontext
def mark_overdue(as_of):
    """Move unpaid invoices past their due date to OVERDUE."""
    try:
        changed = invoice_service.mark_overdue(parse_iso_date(as_of))
    except IMSError as exc:
        _fail(exc)
    for invoice in changed:
        click.echo(
            f"OVERDUE {invoice.invoice_number} due {invoice.due_date.isoformat()} "
            f"balance {_format_cents(invoice.balance_due_cents)}"
        )
    click.echo(f"PASS {len(changed)} invoice(s) marked overdue.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(billing_group)
