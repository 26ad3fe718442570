"""
Pytest fixtures for IMS backend tests.

Provides test database setup, master data fixtures, and a CLI runner.
"""

import pytest
from ims import create_app
from ims.extensions import db
from ims.services import catalog_service, stock_ledger_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CONCURRENCY_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def runner(app):
    """Create CLI runner."""
    return app.test_cli_runner()


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
def warehouse(db_session):
    """Main warehouse (active)."""
    return catalog_service.create_warehouse("MAIN", "Main Warehouse", city="Springfield")


@pytest.fixture(scope='function')
def second_warehouse(db_session):
    """Second warehouse for transfers."""
    return catalog_service.create_warehouse("EAST", "East Warehouse", city="Shelbyville")


@pytest.fixture(scope='function')
def product(db_session):
    """Product priced at 10.00 with cost 4.00 (reorder 10, critical 5)."""
    return catalog_service.create_product("WIDGET-1", "Widget", 1000, cost_price_cents=400)


@pytest.fixture(scope='function')
def supplier(db_session):
    return catalog_service.create_supplier("ACME", "Acme Supplies", email="orders@acme.example")


@pytest.fixture(scope='function')
def customer(db_session):
    return catalog_service.create_customer("jane@example.com", "Jane", "Doe", shipping_address="1 Main St")


@pytest.fixture(scope='function')
def stocked_product(product, warehouse):
    """Product with 100 units on hand at the main warehouse."""
    stock_ledger_service.add_stock(
        product.id,
        warehouse.id,
        100,
        stock_ledger_service.MOVEMENT_TYPE_RECEIPT,
        reason="Opening balance",
    )
    return product
