"""
Batch Allocation Engine

Pure first-expiry-first-out (FEFO) selection of stock batches. Nothing in this
module touches the database; callers pass in batch snapshots and receive a
proposal they can apply through the reconciliation service.

Ordering:
- Earliest expiry date first
- Batches without an expiry date go last
- Ties broken by lot number
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Iterable, List, Optional, Tuple
import uuid

from medistock.core.exceptions import InsufficientStock, ValidationError
from medistock.models.stock import BatchStatus


class ShortfallPolicy(str, Enum):
    """What to do when eligible batches cannot cover the quantity."""
    STRICT = "STRICT"  # Raise InsufficientStock
    PARTIAL = "PARTIAL"  # Return what is available plus the shortfall


@dataclass(frozen=True)
class BatchCandidate:
    """Read-only snapshot of a batch considered for allocation."""
    batch_id: uuid.UUID
    lot_number: str
    expiry_date: Optional[date]
    available_quantity: int
    status: str = BatchStatus.AVAILABLE.value
    is_active: bool = True

    @classmethod
    def from_batch(cls, batch) -> "BatchCandidate":
        return cls(
            batch_id=batch.id,
            lot_number=batch.lot_number,
            expiry_date=batch.expiry_date,
            available_quantity=batch.available_quantity,
            status=batch.status,
            is_active=batch.is_active,
        )


@dataclass(frozen=True)
class BatchAllocation:
    batch_id: uuid.UUID
    lot_number: str
    expiry_date: Optional[date]
    quantity: int


@dataclass(frozen=True)
class AllocationResult:
    requested_quantity: int
    allocations: Tuple[BatchAllocation, ...] = field(default_factory=tuple)

    @property
    def allocated_quantity(self) -> int:
        return sum(a.quantity for a in self.allocations)

    @property
    def shortfall(self) -> int:
        return self.requested_quantity - self.allocated_quantity

    @property
    def is_complete(self) -> bool:
        return self.shortfall == 0

    def as_pairs(self) -> List[Tuple[uuid.UUID, int]]:
        """(batch_id, quantity) pairs in allocation order."""
        return [(a.batch_id, a.quantity) for a in self.allocations]


def fifo_order_key(candidate: BatchCandidate):
    """Sort key: expiry ascending with no-expiry last, then lot number."""
    return (
        candidate.expiry_date is None,
        candidate.expiry_date or date.max,
        candidate.lot_number,
    )


def eligible_candidates(
    candidates: Iterable[BatchCandidate],
    expiring_before: Optional[date] = None,
) -> List[BatchCandidate]:
    """
    Filter to batches that may be allocated, in FEFO order.

    A batch is eligible when it is active, AVAILABLE and has stock on hand.
    When ``expiring_before`` is given, lots that expire before that date are
    left out.
    """
    eligible = [
        c for c in candidates
        if c.is_active
        and c.status == BatchStatus.AVAILABLE.value
        and c.available_quantity > 0
        and not (
            expiring_before is not None
            and c.expiry_date is not None
            and c.expiry_date < expiring_before
        )
    ]
    return sorted(eligible, key=fifo_order_key)


def allocate_fefo(
    candidates: Iterable[BatchCandidate],
    quantity: int,
    policy: ShortfallPolicy = ShortfallPolicy.STRICT,
    expiring_before: Optional[date] = None,
) -> AllocationResult:
    """
    Greedily allocate ``quantity`` across eligible batches, earliest expiry first.

    Args:
        candidates: Batch snapshots of one ledger
        quantity: Units to allocate, must be positive
        policy: STRICT raises when the batches cannot cover the quantity,
            PARTIAL returns the partial allocation with its shortfall
        expiring_before: Skip lots expiring before this date

    Raises:
        ValidationError: quantity is not positive
        InsufficientStock: STRICT policy and not enough eligible stock
    """
    if quantity <= 0:
        raise ValidationError(
            "Allocation quantity must be positive",
            quantity=quantity,
        )

    remaining = quantity
    allocations: List[BatchAllocation] = []
    ordered = eligible_candidates(candidates, expiring_before=expiring_before)

    for candidate in ordered:
        if remaining == 0:
            break
        take = min(remaining, candidate.available_quantity)
        allocations.append(BatchAllocation(
            batch_id=candidate.batch_id,
            lot_number=candidate.lot_number,
            expiry_date=candidate.expiry_date,
            quantity=take,
        ))
        remaining -= take

    if remaining > 0 and policy == ShortfallPolicy.STRICT:
        available = quantity - remaining
        raise InsufficientStock(
            f"Insufficient stock. Available: {available}, Requested: {quantity}",
            requested=quantity,
            available=available,
        )

    return AllocationResult(requested_quantity=quantity, allocations=tuple(allocations))
