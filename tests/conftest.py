"""
Pytest fixtures for the transfer engine test suite.

Provides:
- A throwaway SQLite database per test (aiosqlite)
- Departments, a product and actors of one organization
- A factory that stocks the supplying department with batches

Objects loaded by a session are expired when an operation rolls back, so
fixtures hand out plain ids and tests re-read rows through ``reload``.
"""

import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./medistock_test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")

import uuid
from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from medistock.core.permissions import Actor
from medistock.database import build_engine, build_session_factory, init_db
from medistock.models.department import Department
from medistock.models.product import Product
from medistock.services.stock_ledger_service import StockLedgerService


def in_days(days: int) -> date:
    return date.today() + timedelta(days=days)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'medistock.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def reload(db):
    """Fresh copy of a row from the database."""
    async def _reload(model, entity_id):
        return await db.get(model, entity_id, populate_existing=True)
    return _reload


@pytest.fixture
def org_id():
    return uuid.uuid4()


@pytest.fixture
async def ids(db, org_id):
    """Central pharmacy supplies, ward A requests; one product; one foreign organization."""
    pharmacy = Department(organization_id=org_id, name="Central Pharmacy", slug="pharmacy")
    ward = Department(organization_id=org_id, name="Ward A", slug="ward-a")
    icu = Department(organization_id=org_id, name="ICU", slug="icu")
    closed = Department(organization_id=org_id, name="Old Clinic", slug="old-clinic", is_active=False)
    product = Product(organization_id=org_id, code="AMOX-500", name="Amoxicillin 500mg", base_unit="capsule")
    other_product = Product(organization_id=org_id, code="PARA-1G", name="Paracetamol 1g", base_unit="tablet")
    db.add_all([pharmacy, ward, icu, closed, product, other_product])
    await db.commit()

    return SimpleNamespace(
        org=org_id,
        pharmacy=pharmacy.id,
        ward=ward.id,
        icu=icu.id,
        closed=closed.id,
        product=product.id,
        other_product=other_product.id,
    )


@pytest.fixture
def make_actor(org_id):
    def _make(department_id=None, role="MEMBER", organization_id=None):
        return Actor(
            user_id=uuid.uuid4(),
            organization_id=organization_id or org_id,
            role=role,
            department_id=department_id,
            username=f"user-{role.lower()}",
            full_name=f"Test {role.title()}",
        )
    return _make


@pytest.fixture
def pharmacist(make_actor, ids):
    return make_actor(ids.pharmacy)


@pytest.fixture
def nurse(make_actor, ids):
    return make_actor(ids.ward)


@pytest.fixture
def admin(make_actor):
    return make_actor(role="ADMIN")


@pytest.fixture
def stocked(db, ids, pharmacist):
    """
    Stock the pharmacy with lots of a product.

    Usage:
        stock_id, batch_ids = await stocked(("LOT-A", in_days(90), 100), ...)
    """
    async def _stock(*lots, product_id=None, actor=None):
        product_id = product_id or ids.product
        actor = actor or pharmacist
        ledger = StockLedgerService(db)
        stock = await ledger.get_stock_for(actor.department_id, product_id)
        if stock is None:
            stock = await ledger.create_stock(actor, actor.department_id, product_id)
        stock_id = stock.id
        batch_ids = []
        for lot_number, expiry_date, quantity in lots:
            batch = await ledger.register_batch(
                actor, stock_id, lot_number, quantity, expiry_date=expiry_date
            )
            batch_ids.append(batch.id)
        return stock_id, batch_ids
    return _stock
