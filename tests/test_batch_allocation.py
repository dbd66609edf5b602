"""First-expiry-first-out allocation, no database involved."""
import uuid
from datetime import date

import pytest

from medistock.core.exceptions import InsufficientStock, ValidationError
from medistock.services.batch_allocation import (
    BatchCandidate,
    ShortfallPolicy,
    allocate_fefo,
    eligible_candidates,
)


def candidate(lot, expiry, available, status="AVAILABLE", is_active=True):
    return BatchCandidate(
        batch_id=uuid.uuid4(),
        lot_number=lot,
        expiry_date=expiry,
        available_quantity=available,
        status=status,
        is_active=is_active,
    )


def test_earliest_expiry_is_drained_first():
    b1 = candidate("B1", date(2025, 1, 1), 100)
    b2 = candidate("B2", date(2025, 6, 1), 100)

    result = allocate_fefo([b2, b1], 150)

    assert result.as_pairs() == [(b1.batch_id, 100), (b2.batch_id, 50)]
    assert result.allocated_quantity == 150
    assert result.is_complete


def test_quantity_within_first_batch_uses_only_that_batch():
    b1 = candidate("B1", date(2025, 1, 1), 100)
    b2 = candidate("B2", date(2025, 6, 1), 100)

    result = allocate_fefo([b1, b2], 80)

    assert result.as_pairs() == [(b1.batch_id, 80)]


def test_batches_without_expiry_go_last_and_ties_break_on_lot_number():
    no_expiry = candidate("A-000", None, 10)
    later_lot = candidate("LOT-2", date(2026, 3, 1), 10)
    earlier_lot = candidate("LOT-1", date(2026, 3, 1), 10)

    ordered = eligible_candidates([no_expiry, later_lot, earlier_lot])

    assert [c.lot_number for c in ordered] == ["LOT-1", "LOT-2", "A-000"]


def test_ineligible_batches_are_skipped():
    empty = candidate("EMPTY", date(2025, 1, 1), 0)
    quarantined = candidate("QUAR", date(2025, 1, 2), 50, status="QUARANTINE")
    retired = candidate("OLD", date(2025, 1, 3), 50, is_active=False)
    good = candidate("GOOD", date(2025, 2, 1), 50)

    result = allocate_fefo([empty, quarantined, retired, good], 30)

    assert result.as_pairs() == [(good.batch_id, 30)]


def test_expired_lots_are_skipped_when_cutoff_given():
    expired = candidate("EXP", date(2024, 12, 31), 100)
    fresh = candidate("FRESH", date(2025, 12, 31), 100)

    result = allocate_fefo([expired, fresh], 20, expiring_before=date(2025, 1, 1))

    assert result.as_pairs() == [(fresh.batch_id, 20)]


def test_strict_policy_raises_with_quantities():
    b1 = candidate("B1", date(2025, 1, 1), 30)
    b2 = candidate("B2", date(2025, 2, 1), 20)

    with pytest.raises(InsufficientStock) as exc_info:
        allocate_fefo([b1, b2], 80)

    assert exc_info.value.context["requested"] == 80
    assert exc_info.value.context["available"] == 50


def test_partial_policy_reports_shortfall():
    b1 = candidate("B1", date(2025, 1, 1), 30)

    result = allocate_fefo([b1], 80, policy=ShortfallPolicy.PARTIAL)

    assert result.allocated_quantity == 30
    assert result.shortfall == 50
    assert not result.is_complete


def test_partial_policy_with_no_stock_returns_empty_allocation():
    result = allocate_fefo([], 10, policy=ShortfallPolicy.PARTIAL)

    assert result.allocations == ()
    assert result.shortfall == 10


@pytest.mark.parametrize("quantity", [0, -5])
def test_non_positive_quantity_is_rejected(quantity):
    with pytest.raises(ValidationError):
        allocate_fefo([candidate("B1", None, 10)], quantity)
