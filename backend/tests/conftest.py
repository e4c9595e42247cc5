"""
Pytest fixtures for StockFlow backend tests.

Provides the application, a clean database per test, operators, products and
an event recorder.
"""

import pytest

from stockflow import create_app
from stockflow.extensions import db
from stockflow.services import ledger_service
from stockflow.services.catalog_service import create_product
from stockflow.services.events import get_event_bus
from stockflow.services.operator_service import create_operator


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application for testing."""
    db_path = tmp_path_factory.mktemp("db") / "stockflow-test.sqlite3"
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test',
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{db_path}",
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def operator_token(db_session):
    """Operator 'counter' and its plaintext API token."""
    return create_operator("counter")


@pytest.fixture(scope='function')
def operator(operator_token):
    return operator_token[0]


@pytest.fixture(scope='function')
def headers(operator_token):
    return auth_headers(operator_token[1])


@pytest.fixture(scope='function')
def other_operator(db_session):
    operator, _ = create_operator("other")
    return operator


@pytest.fixture(scope='function')
def product(operator):
    """Product without lots, sale price 10.00."""
    return create_product(
        operator_id=operator.id,
        sku="SOAP-1",
        name="Soap",
        sale_price_cents=1000,
    )


@pytest.fixture(scope='function')
def lot_product(operator):
    """Lot-managed product, no explicit sale price."""
    return create_product(
        operator_id=operator.id,
        sku="MILK-1L",
        name="Milk 1L",
        managed_by_lots=True,
    )


@pytest.fixture(scope='function')
def unpriced_product(operator):
    """Product without lots or sale price; it sells at its average cost."""
    return create_product(
        operator_id=operator.id,
        sku="FLOUR-1",
        name="Flour",
    )


@pytest.fixture(scope='function')
def recorded_events(app):
    """Collects every event published during the test."""
    bus = get_event_bus()
    seen = []
    bus.subscribe(seen.append)
    yield seen
    bus.unsubscribe(seen.append)


def receive(operator, product, quantity, unit_cost_cents=100, **kwargs):
    """Helper to put stock on a product through the ledger."""
    return ledger_service.record_receipt(
        operator_id=operator.id,
        product_id=product.id,
        quantity=quantity,
        unit_cost_cents=unit_cost_cents,
        **kwargs,
    )


def stock_before_lot_tracking(operator, product, quantity, unit_cost_cents=100):
    """Helper for stock a product held before it was switched to lot tracking."""
    product.managed_by_lots = False
    db.session.commit()
    movement = receive(operator, product, quantity, unit_cost_cents)
    product.managed_by_lots = True
    db.session.commit()
    return movement


def receive_into_new_lot(operator, product, lot_number, quantity, **lot_fields):
    """Helper to receive stock into a new lot."""
    movement = receive(operator, product, quantity, new_lot={"lot_number": lot_number, **lot_fields})
    return movement.allocations[0].lot


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
