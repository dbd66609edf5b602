"""Delta planners and applying plans to ledgers and batches."""
import uuid
from datetime import date, timedelta

import pytest

from medistock.core.exceptions import (
    ConcurrencyConflict,
    InsufficientStock,
    LedgerIntegrityError,
    NotFound,
)
from medistock.models.stock import Stock, StockBatch
from medistock.services.reconciliation_service import (
    CounterField,
    DeltaPlan,
    EntityKind,
    QuantityDelta,
    ReconciliationService,
    plan_dispatch,
    plan_receipt,
    plan_reservation,
    plan_write_off,
)
from medistock.services.unit_of_work import run_in_transaction


def in_days(days):
    return date.today() + timedelta(days=days)


# ==================== PLANNERS ====================

def test_reservation_mirrors_batch_changes_on_the_ledger():
    stock_id, b1, b2 = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()

    merged = plan_reservation(stock_id, [(b1, 30), (b2, 20)]).merged()

    assert merged[(EntityKind.BATCH, b1)] == {CounterField.AVAILABLE: -30, CounterField.RESERVED: 30}
    assert merged[(EntityKind.BATCH, b2)] == {CounterField.AVAILABLE: -20, CounterField.RESERVED: 20}
    assert merged[(EntityKind.STOCK, stock_id)] == {CounterField.AVAILABLE: -50, CounterField.RESERVED: 50}


def test_dispatch_and_receipt_plans_combine():
    source, target, batch, mirror = (uuid.uuid4() for _ in range(4))

    plan = plan_dispatch(source, [(batch, 40)]) + plan_receipt(target, [(mirror, 30)])
    merged = plan.merged()

    assert plan.reason == "dispatch+receipt"
    assert merged[(EntityKind.STOCK, source)] == {CounterField.RESERVED: -40, CounterField.TOTAL: -40}
    assert merged[(EntityKind.STOCK, target)] == {CounterField.AVAILABLE: 30, CounterField.TOTAL: 30}


def test_write_off_removes_available_and_total():
    stock_id, batch_id = uuid.uuid4(), uuid.uuid4()

    merged = plan_write_off(stock_id, batch_id, 7).merged()

    assert merged[(EntityKind.BATCH, batch_id)] == {CounterField.AVAILABLE: -7, CounterField.TOTAL: -7}


def test_zero_quantities_make_an_empty_plan():
    plan = plan_reservation(uuid.uuid4(), [(uuid.uuid4(), 0)])

    assert plan.is_empty


# ==================== APPLY ====================

async def test_apply_updates_batch_and_ledger(db, stocked, reload):
    stock_id, (batch_id,) = await stocked(("LOT-1", in_days(120), 100))

    await ReconciliationService(db).apply(plan_reservation(stock_id, [(batch_id, 40)]))
    await db.commit()

    batch = await reload(StockBatch, batch_id)
    stock = await reload(Stock, stock_id)
    assert (batch.available_quantity, batch.reserved_quantity, batch.total_quantity) == (60, 40, 100)
    assert (stock.available_quantity, stock.reserved_quantity, stock.total_quantity) == (60, 40, 100)
    assert stock.last_movement_at is not None


async def test_apply_rejects_negative_counters_without_changes(db, stocked, reload):
    stock_id, (first, second) = await stocked(
        ("LOT-1", in_days(60), 50),
        ("LOT-2", in_days(90), 10),
    )

    with pytest.raises(InsufficientStock) as exc_info:
        await ReconciliationService(db).apply(plan_reservation(stock_id, [(first, 20), (second, 15)]))
    await db.rollback()

    assert exc_info.value.context["counter"] == "available_quantity"
    assert (await reload(StockBatch, first)).available_quantity == 50
    assert (await reload(StockBatch, second)).available_quantity == 10
    assert (await reload(Stock, stock_id)).available_quantity == 60


async def test_apply_rejects_plans_breaking_the_counter_identity(db, stocked):
    stock_id, (batch_id,) = await stocked(("LOT-1", in_days(60), 50))
    plan = DeltaPlan(
        deltas=(QuantityDelta(EntityKind.BATCH, batch_id, CounterField.AVAILABLE, 5),),
        reason="broken",
    )

    with pytest.raises(LedgerIntegrityError):
        await ReconciliationService(db).apply(plan)
    await db.rollback()


async def test_apply_unknown_batch_is_not_found(db, stocked):
    stock_id, _ = await stocked(("LOT-1", in_days(60), 50))

    with pytest.raises(NotFound):
        await ReconciliationService(db).apply(plan_reservation(stock_id, [(uuid.uuid4(), 5)]))
    await db.rollback()


async def test_stale_batch_raises_concurrency_conflict(session_factory, stocked, reload):
    stock_id, (batch_id,) = await stocked(("LOT-1", in_days(60), 100))

    async with session_factory() as first, session_factory() as second:
        await first.get(StockBatch, batch_id)

        await ReconciliationService(second).apply(plan_reservation(stock_id, [(batch_id, 30)]))
        await second.commit()

        with pytest.raises(ConcurrencyConflict):
            await ReconciliationService(first).apply(plan_reservation(stock_id, [(batch_id, 30)]))
        await first.rollback()

    batch = await reload(StockBatch, batch_id)
    assert (batch.available_quantity, batch.reserved_quantity) == (70, 30)


# ==================== UNIT OF WORK ====================

async def test_run_in_transaction_retries_conflicts(db):
    attempts = []

    async def operation():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConcurrencyConflict("busy")
        return "done"

    assert await run_in_transaction(db, operation, retries=3) == "done"
    assert len(attempts) == 3


async def test_run_in_transaction_gives_up_after_retries(db):
    attempts = []

    async def operation():
        attempts.append(1)
        raise ConcurrencyConflict("busy")

    with pytest.raises(ConcurrencyConflict):
        await run_in_transaction(db, operation, retries=2)
    assert len(attempts) == 3


async def test_stale_reservation_is_retried_with_fresh_data(session_factory, stocked, reload):
    stock_id, (batch_id,) = await stocked(("LOT-1", in_days(60), 100))

    async with session_factory() as first, session_factory() as second:
        await first.get(StockBatch, batch_id)

        await ReconciliationService(second).apply(plan_reservation(stock_id, [(batch_id, 30)]))
        await second.commit()

        async def operation():
            await ReconciliationService(first).apply(plan_reservation(stock_id, [(batch_id, 30)]))

        await run_in_transaction(first, operation, retries=1)

    batch = await reload(StockBatch, batch_id)
    assert (batch.available_quantity, batch.reserved_quantity, batch.total_quantity) == (40, 60, 100)
