"""
Pytest fixtures for PressTrack backend tests.

Provides the test app on in-memory SQLite, a per-test table wipe, actor
contexts for each role, and factories for order items and papers.
"""

from datetime import timedelta

import pytest
from presstrack import create_app
from presstrack.extensions import db
from presstrack.services.permission_service import ActorContext
from presstrack.time_utils import today_utc


DEPARTMENT_MEMBERS = {
    "u-sales": {"department": "sales", "name": "Sam Sales"},
    "u-design": {"department": "design", "name": "Dana Design"},
    "u-prepress": "prepress",
    "u-production": {"department": "production", "name": "Pat Press"},
    "u-outsource": "outsource",
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DEPARTMENT_MEMBERS': DEPARTMENT_MEMBERS,
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


@pytest.fixture
def workflow(app, db_session):
    return app.extensions["presstrack.workflow"]


@pytest.fixture
def inventory(app, db_session):
    return app.extensions["presstrack.inventory"]


@pytest.fixture
def reservations(app, db_session):
    return app.extensions["presstrack.reservations"]


@pytest.fixture
def admin():
    return ActorContext(actor_id="u-admin", actor_role="admin", actor_name="Ada Admin")


@pytest.fixture
def sales():
    return ActorContext(actor_id="u-sales", actor_role="sales", actor_department="sales", actor_name="Sam Sales")


@pytest.fixture
def designer():
    return ActorContext(actor_id="u-design", actor_role="design", actor_department="design")


@pytest.fixture
def prepress():
    return ActorContext(actor_id="u-prepress", actor_role="prepress", actor_department="prepress")


@pytest.fixture
def production():
    return ActorContext(actor_id="u-production", actor_role="production", actor_department="production")


@pytest.fixture
def make_item(workflow, sales):
    """Factory: an order item in sales, due `days` from today."""
    counter = {"n": 0}

    def _make(*, need_design=False, days=10, quantity=100, product_name="Wedding card"):
        counter["n"] += 1
        return workflow.create_order_item(
            order_id=f"ORD-{1000 + counter['n']}",
            product_name=product_name,
            quantity=quantity,
            delivery_date=today_utc() + timedelta(days=days),
            need_design=need_design,
            actor=sales,
        )

    return _make


@pytest.fixture
def make_paper(inventory, admin):
    """Factory: an active paper with opening stock."""
    def _make(*, sheets=1000, name="Art card 300gsm", reorder_threshold=0):
        return inventory.add_paper_item(
            name=name,
            gsm=300,
            width=720,
            height=1020,
            reorder_threshold=reorder_threshold,
            initial_sheets=sheets,
            actor=admin,
        )

    return _make


@pytest.fixture
def in_production(workflow, make_item, sales):
    """Factory: an item that went sales -> production with the given sequence."""
    def _make(sequence=("foiling", "printing"), **kwargs):
        item = make_item(need_design=False, **kwargs)
        workflow.define_production_sequence(item.id, list(sequence), sales)
        workflow.mark_ready_for_production(item.id, sales)
        return workflow.transition_stage(item.id, "production", sales)

    return _make
