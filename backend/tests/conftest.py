"""
Pytest fixtures for Tableside backend tests.

Provides an in-memory app, per-test data wipe, a frozen clock, staff headers
and a seeded floor (tables + menu).
"""

from datetime import datetime

import pytest

from tableside import create_app
from tableside.extensions import db
from tableside.models import MenuItem, Table
from tableside.time_utils import FrozenClock, SystemClock


STAFF_KEY = "test-staff-key"
START_TIME = datetime(2026, 3, 14, 19, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STAFF_API_KEY': STAFF_KEY,
        'TABLE_TOKEN_REQUIRED': True,
        'PAYMENT_WEBHOOK_SECRET': None,
        'PIX_KEY': 'pix@tableside.test',
        'PIX_MERCHANT_NAME': 'TABLESIDE TEST',
        'PIX_MERCHANT_CITY': 'SAO PAULO',
        'PUBLIC_BASE_URL': 'https://mesa.example.com',
        'CORS_ALLOWED_ORIGINS': ['http://localhost:3000'],
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function', autouse=True)
def db_session(app):
    """Fresh data for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function', autouse=True)
def clock(app):
    """Frozen clock installed on the app; tests move time with clock.advance()."""
    frozen = FrozenClock(START_TIME)
    app.extensions["clock"] = frozen
    yield frozen
    app.extensions["clock"] = SystemClock()


@pytest.fixture(scope='function')
def staff_headers():
    return {'Authorization': f'Bearer {STAFF_KEY}'}


@pytest.fixture(scope='function')
def tables(db_session):
    """Tables 1-3, all available."""
    rows = [Table(number=n, seats=4, status="available") for n in (1, 2, 3)]
    db_session.add_all(rows)
    db_session.commit()
    return rows


@pytest.fixture(scope='function')
def table(tables):
    return tables[0]


@pytest.fixture(scope='function')
def menu(db_session):
    """Three menu items keyed by short name; 'sold_out' is unavailable."""
    items = {
        "burger": MenuItem(name="Burger", price_cents=2500, preparation_time=15, available=True),
        "juice": MenuItem(name="Juice", price_cents=850, preparation_time=5, available=True),
        "sold_out": MenuItem(name="Fish of the day", price_cents=6000, preparation_time=30, available=False),
    }
    db_session.add_all(items.values())
    db_session.commit()
    return items


def issue_token(client, table_id: int, ttl_class: str = "guest", headers: dict | None = None) -> str:
    """Helper to get a table token through the API."""
    response = client.post(
        f'/api/tables/{table_id}/tokens',
        json={'ttl_class': ttl_class},
        headers=headers or {},
    )
    assert response.status_code == 201, response.json
    return response.json['token']


def token_headers(token: str) -> dict:
    """Helper to create guest token headers."""
    return {'X-Table-Token': token}
