"""
Stock Reconciliation Service

Every change to ledger and batch counters follows command -> delta -> apply:

1. A pure planner turns a command (reserve, dispatch, receive, write off)
   into an immutable DeltaPlan of (entity, counter, amount) triples.
2. ReconciliationService.apply() locks every touched row in a fixed order,
   applies the merged deltas, checks the counter invariants and flushes.

Rows carry a ``version`` column (SQLAlchemy ``version_id_col``). A concurrent
writer makes the flush fail with StaleDataError, surfaced as
ConcurrencyConflict so the unit of work can retry with fresh data.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Tuple
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from medistock.core.exceptions import (
    ConcurrencyConflict,
    InsufficientStock,
    LedgerIntegrityError,
    NotFound,
)
from medistock.db_types import utcnow
from medistock.models.stock import Stock, StockBatch


logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    STOCK = "STOCK"
    BATCH = "BATCH"


class CounterField(str, Enum):
    TOTAL = "total_quantity"
    AVAILABLE = "available_quantity"
    RESERVED = "reserved_quantity"
    INCOMING = "incoming_quantity"


@dataclass(frozen=True)
class QuantityDelta:
    kind: EntityKind
    entity_id: uuid.UUID
    counter: CounterField
    amount: int


@dataclass(frozen=True)
class DeltaPlan:
    """Immutable set of counter changes applied as one unit."""
    deltas: Tuple[QuantityDelta, ...] = field(default_factory=tuple)
    reason: str = ""

    def __add__(self, other: "DeltaPlan") -> "DeltaPlan":
        reason = "+".join(r for r in (self.reason, other.reason) if r)
        return DeltaPlan(deltas=self.deltas + other.deltas, reason=reason)

    @property
    def is_empty(self) -> bool:
        return not any(d.amount for d in self.deltas)

    def merged(self) -> Dict[Tuple[EntityKind, uuid.UUID], Dict[CounterField, int]]:
        """Net amount per entity and counter."""
        net: Dict[Tuple[EntityKind, uuid.UUID], Dict[CounterField, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        for delta in self.deltas:
            net[(delta.kind, delta.entity_id)][delta.counter] += delta.amount
        return {key: dict(counters) for key, counters in net.items()}

    def entity_ids(self, kind: EntityKind) -> List[uuid.UUID]:
        """Touched ids of one kind, in lock order."""
        return sorted({d.entity_id for d in self.deltas if d.kind == kind}, key=str)


# =============================================================================
# PLANNERS (pure)
# =============================================================================

def _mirror(stock_id: uuid.UUID, batch_id: uuid.UUID, changes: Dict[CounterField, int]) -> List[QuantityDelta]:
    """Same change on the batch and on its ledger."""
    deltas = []
    for counter, amount in changes.items():
        if amount == 0:
            continue
        deltas.append(QuantityDelta(EntityKind.BATCH, batch_id, counter, amount))
        deltas.append(QuantityDelta(EntityKind.STOCK, stock_id, counter, amount))
    return deltas


def plan_reservation(stock_id: uuid.UUID, allocations: Iterable[Tuple[uuid.UUID, int]]) -> DeltaPlan:
    """Move allocated quantity from available to reserved."""
    deltas: List[QuantityDelta] = []
    for batch_id, quantity in allocations:
        deltas.extend(_mirror(stock_id, batch_id, {
            CounterField.AVAILABLE: -quantity,
            CounterField.RESERVED: quantity,
        }))
    return DeltaPlan(deltas=tuple(deltas), reason="reservation")


def plan_dispatch(stock_id: uuid.UUID, dispatches: Iterable[Tuple[uuid.UUID, int]]) -> DeltaPlan:
    """Release reserved quantity out of the ledger entirely."""
    deltas: List[QuantityDelta] = []
    for batch_id, quantity in dispatches:
        deltas.extend(_mirror(stock_id, batch_id, {
            CounterField.RESERVED: -quantity,
            CounterField.TOTAL: -quantity,
        }))
    return DeltaPlan(deltas=tuple(deltas), reason="dispatch")


def plan_receipt(stock_id: uuid.UUID, receipts: Iterable[Tuple[uuid.UUID, int]]) -> DeltaPlan:
    """Add received quantity as available stock."""
    deltas: List[QuantityDelta] = []
    for batch_id, quantity in receipts:
        deltas.extend(_mirror(stock_id, batch_id, {
            CounterField.AVAILABLE: quantity,
            CounterField.TOTAL: quantity,
        }))
    return DeltaPlan(deltas=tuple(deltas), reason="receipt")


def plan_write_off(stock_id: uuid.UUID, batch_id: uuid.UUID, quantity: int) -> DeltaPlan:
    """Remove available quantity, e.g. when a batch is retired."""
    return DeltaPlan(
        deltas=tuple(_mirror(stock_id, batch_id, {
            CounterField.AVAILABLE: -quantity,
            CounterField.TOTAL: -quantity,
        })),
        reason="write_off",
    )


# =============================================================================
# APPLY
# =============================================================================

class ReconciliationService:
    """Applies delta plans to stock ledgers and batches."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _lock_rows(self, model, ids: List[uuid.UUID], kind: EntityKind) -> Dict[uuid.UUID, object]:
        if not ids:
            return {}
        result = await self.db.execute(
            select(model)
            .where(model.id.in_(ids))
            .order_by(model.id)
            .with_for_update()
        )
        rows = {row.id: row for row in result.scalars().all()}
        for entity_id in ids:
            if entity_id not in rows:
                raise NotFound(kind.value.title(), entity_id)
        return rows

    async def apply(self, plan: DeltaPlan) -> Dict[Tuple[EntityKind, uuid.UUID], object]:
        """
        Apply a plan atomically within the current transaction.

        Returns the touched rows keyed by (kind, id).

        Raises:
            InsufficientStock: a counter would go negative
            LedgerIntegrityError: available + reserved would differ from total
            ConcurrencyConflict: a row was changed by another transaction
        """
        if plan.is_empty:
            return {}

        # Ledgers before batches, each in id order, so writers never deadlock
        stocks = await self._lock_rows(Stock, plan.entity_ids(EntityKind.STOCK), EntityKind.STOCK)
        batches = await self._lock_rows(StockBatch, plan.entity_ids(EntityKind.BATCH), EntityKind.BATCH)

        touched: Dict[Tuple[EntityKind, uuid.UUID], object] = {}
        staged: Dict[Tuple[EntityKind, uuid.UUID], Dict[str, int]] = {}

        for (kind, entity_id), changes in plan.merged().items():
            row = stocks[entity_id] if kind == EntityKind.STOCK else batches[entity_id]
            values = {c.value: getattr(row, c.value) for c in CounterField}
            for counter, amount in changes.items():
                values[counter.value] += amount

            for counter, value in values.items():
                if value < 0:
                    current = getattr(row, counter)
                    raise InsufficientStock(
                        f"Insufficient stock: {counter} would become {value}",
                        requested=-changes.get(CounterField(counter), 0),
                        available=current,
                        entity=kind.value,
                        entity_id=entity_id,
                        counter=counter,
                    )

            if values["available_quantity"] + values["reserved_quantity"] != values["total_quantity"]:
                raise LedgerIntegrityError(
                    "Counter change would break available + reserved == total",
                    entity=kind.value,
                    entity_id=entity_id,
                    reason=plan.reason,
                    **values,
                )

            staged[(kind, entity_id)] = values
            touched[(kind, entity_id)] = row

        now = utcnow()
        for key, values in staged.items():
            row = touched[key]
            for counter, value in values.items():
                setattr(row, counter, value)
            if key[0] == EntityKind.STOCK:
                row.last_movement_at = now

        try:
            await self.db.flush()
        except StaleDataError as exc:
            logger.warning(f"Version conflict applying {plan.reason} plan: {exc}")
            raise ConcurrencyConflict(
                "Stock changed concurrently, retry with fresh data",
                reason=plan.reason,
            ) from exc

        logger.debug(f"Applied {plan.reason} plan touching {len(touched)} rows")
        return touched
