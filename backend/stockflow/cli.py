# Overview: Flask CLI command groups for bootstrap, inspection, and stock checks.

# backend/stockflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Operators:
# - python -m flask operators create --username counter1
#   Create an operator and print its API token (shown once).
# - python -m flask operators list
#
# Products:
# - python -m flask products create --operator-id 1 --sku MILK-1L --name "Milk 1L" --lots --price-cents 250
#
# Lots:
# - python -m flask lots expiring --operator-id 1 --days 30
#   Lots with stock expiring within N days.
#
# Stock:
# - python -m flask stock check [--operator-id 1]
#   Report products whose lots or ledger do not match stock. Reports only, never repairs.

import sys

import click
from flask.cli import with_appcontext

from .errors import StockError
from .extensions import db
from .models import Operator
from .services import catalog_service, lot_service, operator_service
from .services.reconciliation_service import find_ledger_drift, find_lot_drift


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
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

    click.echo("PASS Database reset complete.")


@click.group('operators')
def operators_group():
    """Operator management commands."""


@operators_group.command('create')
@click.option('--username', prompt=True, help='Username')
@with_appcontext
def create_operator_cli(username):
    """Create an operator. The API token is printed once and stored only as a hash."""
    try:
        operator, token = operator_service.create_operator(username)
    except StockError as e:
        click.echo(f"FAIL {e}", err=True)
        sys.exit(1)

    click.echo(f"PASS Created operator {operator.username} (ID: {operator.id})")
    click.echo(f"     Token: {token}")


@operators_group.command('list')
@with_appcontext
def list_operators_cli():
    operators = db.session.query(Operator).order_by(Operator.id).all()
    if not operators:
        click.echo("No operators.")
        return
    for operator in operators:
        status = "active" if operator.is_active else "inactive"
        click.echo(f"{operator.id:>4}  {operator.username:<24} {status}")


@click.group('products')
def products_group():
    """Minimal product bootstrap (catalog screens own product CRUD)."""


@products_group.command('create')
@click.option('--operator-id', type=int, required=True, help='Owning operator ID')
@click.option('--sku', required=True, help='SKU, unique per operator')
@click.option('--name', required=True, help='Product name')
@click.option('--unit', default='un', show_default=True, help='Unit of measure')
@click.option('--lots', 'managed_by_lots', is_flag=True, help='Track stock by lot')
@click.option('--price-cents', type=int, default=0, show_default=True,
              help='Sale price in cents (0 = use weighted-average cost)')
@with_appcontext
def create_product_cli(operator_id, sku, name, unit, managed_by_lots, price_cents):
    try:
        product = catalog_service.create_product(
            operator_id=operator_id,
            sku=sku,
            name=name,
            unit=unit,
            managed_by_lots=managed_by_lots,
            sale_price_cents=price_cents,
        )
    except StockError as e:
        click.echo(f"FAIL {e}", err=True)
        sys.exit(1)

    click.echo(f"PASS Created product {product.sku} (ID: {product.id}, lots: {product.managed_by_lots})")


@click.group('lots')
def lots_group():
    """Lot inspection commands."""


@lots_group.command('expiring')
@click.option('--operator-id', type=int, required=True, help='Operator ID')
@click.option('--days', type=int, default=None, help='Window in days (default EXPIRY_WARNING_DAYS)')
@with_appcontext
def expiring_lots_cli(operator_id, days):
    try:
        lots = lot_service.list_expiring(operator_id=operator_id, days=days)
    except StockError as e:
        click.echo(f"FAIL {e}", err=True)
        sys.exit(1)

    if not lots:
        click.echo("No lots expiring in the window.")
        return

    click.echo(f"{'PRODUCT':<20} {'LOT':<16} {'QTY':>6}  EXPIRY      DAYS")
    for lot in lots:
        status = lot_service.lot_status(lot)
        click.echo(
            f"{lot.product.sku:<20} {lot.lot_number:<16} {lot.quantity:>6}  "
            f"{lot.expiry_date.isoformat()}  {status.days_until_expiry}"
        )


@click.group('stock')
def stock_group():
    """Stock consistency commands."""


@stock_group.command('check')
@click.option('--operator-id', type=int, default=None, help='Limit to one operator')
@with_appcontext
def stock_check_cli(operator_id):
    """
    Compare product stock with its lots and with its ledger.

    Exits 1 when lots exceed stock or the ledger disagrees with stock.
    Nothing is repaired.
    """
    lot_drift = find_lot_drift(operator_id)
    ledger_drift = find_ledger_drift(operator_id)
    failed = False

    for row in lot_drift:
        if row.over_allocated:
            failed = True
            click.echo(f"FAIL {row.sku}: lots hold {row.in_lots}, stock is {row.stock}")
        else:
            click.echo(f"INFO {row.sku}: {row.unallocated} units not assigned to any lot")

    for row in ledger_drift:
        failed = True
        click.echo(f"FAIL {row.sku}: stock is {row.stock}, ledger replay gives {row.ledger_stock}")

    if failed:
        sys.exit(1)
    click.echo("PASS Stock matches lots and ledger.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(operators_group)
    app.cli.add_command(products_group)
    app.cli.add_command(lots_group)
    app.cli.add_command(stock_group)
