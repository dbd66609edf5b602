"""
Transfer Item State Machine

This module is the SINGLE SOURCE OF TRUTH for transfer item status transitions
and for the transfer status derived from its items.

Item lifecycle:
    PENDING -> APPROVED -> PREPARED -> DELIVERED
    PENDING -> CANCELLED

The transfer header never changes status on its own; its status and rollup
timestamps are recomputed from the items after every item transition.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from medistock.core.exceptions import InvalidTransition
from medistock.models.transfer import TransferItemStatus, TransferStatus


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
ITEM_TRANSITIONS: Dict[str, List[str]] = {
    TransferItemStatus.PENDING.value: [
        TransferItemStatus.APPROVED.value,   # Supplying department accepts
        TransferItemStatus.CANCELLED.value,  # Withdrawn before approval
    ],
    TransferItemStatus.APPROVED.value: [
        TransferItemStatus.PREPARED.value,   # Batches reserved
    ],
    TransferItemStatus.PREPARED.value: [
        TransferItemStatus.DELIVERED.value,  # Receipt confirmed
    ],
    TransferItemStatus.DELIVERED.value: [],  # Terminal state
    TransferItemStatus.CANCELLED.value: [],  # Terminal state
}

# History action recorded for each transition
TRANSITION_ACTIONS: Dict[Tuple[str, str], str] = {
    (TransferItemStatus.PENDING.value, TransferItemStatus.APPROVED.value): "APPROVED",
    (TransferItemStatus.PENDING.value, TransferItemStatus.CANCELLED.value): "CANCELLED",
    (TransferItemStatus.APPROVED.value, TransferItemStatus.PREPARED.value): "PREPARED",
    (TransferItemStatus.PREPARED.value, TransferItemStatus.DELIVERED.value): "DELIVERED",
}

# Progress order of live statuses, used by the rollup
ITEM_PROGRESS: Dict[str, int] = {
    TransferItemStatus.PENDING.value: 0,
    TransferItemStatus.APPROVED.value: 1,
    TransferItemStatus.PREPARED.value: 2,
    TransferItemStatus.DELIVERED.value: 3,
}

_PROGRESS_TO_TRANSFER_STATUS = {
    0: TransferStatus.PENDING.value,
    1: TransferStatus.APPROVED.value,
    2: TransferStatus.PREPARED.value,
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in ITEM_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    return ITEM_TRANSITIONS.get(current_status, [])


def get_transition_action(current_status: str, new_status: str) -> str:
    return TRANSITION_ACTIONS.get((current_status, new_status), f"{current_status} -> {new_status}")


def validate_transition(current_status: str, new_status: str, **context: Any) -> str:
    """
    Validate an item status transition and return its history action.

    Unlike header edits, a transition to the same status is never a no-op:
    approving an approved item is an error.

    Raises:
        InvalidTransition: If the transition is not in the table
    """
    if not can_transition(current_status, new_status):
        allowed = get_allowed_transitions(current_status)
        if not allowed:
            message = f"Item in '{current_status}' status cannot change. This is a terminal state."
        else:
            message = (
                f"Cannot change item from '{current_status}' to '{new_status}'. "
                f"Allowed transitions: {', '.join(allowed)}"
            )
        raise InvalidTransition(current_status, new_status, message=message, **context)
    return get_transition_action(current_status, new_status)


def is_terminal(status: str) -> bool:
    """Is this a terminal (final) state?"""
    return not ITEM_TRANSITIONS.get(status)


def is_live(status: str) -> bool:
    """Cancelled items no longer count towards the transfer."""
    return status != TransferItemStatus.CANCELLED.value


# =============================================================================
# ROLLUP
# =============================================================================

@dataclass(frozen=True)
class TransferRollup:
    """Transfer status and timestamps derived from its items."""
    status: str
    approved_at: Optional[datetime] = None
    prepared_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


def _latest(values: Iterable[Optional[datetime]]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return max(present) if present else None


def _earliest(values: Iterable[Optional[datetime]]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return min(present) if present else None


def derive_rollup(items: Iterable) -> TransferRollup:
    """
    Compute the transfer status from its items.

    - no live items -> CANCELLED
    - every live item DELIVERED -> COMPLETED
    - some live items DELIVERED -> PARTIAL
    - otherwise the least advanced live status (PENDING < APPROVED < PREPARED)

    Items only need ``status`` and the per-transition timestamps.
    """
    items = list(items)
    live = [i for i in items if is_live(i.status)]

    approved_at = _earliest(i.approved_at for i in items)

    if not live:
        return TransferRollup(
            status=TransferStatus.CANCELLED.value,
            approved_at=approved_at,
            cancelled_at=_latest(i.cancelled_at for i in items),
        )

    progress = [ITEM_PROGRESS[i.status] for i in live]
    delivered = ITEM_PROGRESS[TransferItemStatus.DELIVERED.value]
    prepared = ITEM_PROGRESS[TransferItemStatus.PREPARED.value]

    prepared_at = None
    if min(progress) >= prepared:
        prepared_at = _latest(i.prepared_at for i in live)

    if all(p == delivered for p in progress):
        return TransferRollup(
            status=TransferStatus.COMPLETED.value,
            approved_at=approved_at,
            prepared_at=prepared_at,
            delivered_at=_latest(i.delivered_at for i in live),
        )

    if any(p == delivered for p in progress):
        status = TransferStatus.PARTIAL.value
    else:
        status = _PROGRESS_TO_TRANSFER_STATUS[min(progress)]

    return TransferRollup(
        status=status,
        approved_at=approved_at,
        prepared_at=prepared_at,
    )


def apply_rollup(transfer, items: Optional[Iterable] = None) -> TransferRollup:
    """Write the derived status and timestamps onto the transfer header."""
    rollup = derive_rollup(items if items is not None else transfer.items)
    transfer.status = rollup.status
    transfer.approved_at = rollup.approved_at
    transfer.prepared_at = rollup.prepared_at
    transfer.delivered_at = rollup.delivered_at
    transfer.cancelled_at = rollup.cancelled_at
    transfer.touch()
    return rollup
