"""Item transition table and transfer rollup."""
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from medistock.core.exceptions import InvalidTransition
from medistock.services.transfer_state_machine import (
    can_transition,
    derive_rollup,
    is_terminal,
    validate_transition,
)

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def item(status, approved=None, prepared=None, delivered=None, cancelled=None):
    return SimpleNamespace(
        status=status,
        approved_at=approved,
        prepared_at=prepared,
        delivered_at=delivered,
        cancelled_at=cancelled,
    )


@pytest.mark.parametrize("current,requested,action", [
    ("PENDING", "APPROVED", "APPROVED"),
    ("PENDING", "CANCELLED", "CANCELLED"),
    ("APPROVED", "PREPARED", "PREPARED"),
    ("PREPARED", "DELIVERED", "DELIVERED"),
])
def test_allowed_transitions_return_their_action(current, requested, action):
    assert can_transition(current, requested)
    assert validate_transition(current, requested) == action


@pytest.mark.parametrize("current,requested", [
    ("PENDING", "PREPARED"),
    ("PENDING", "DELIVERED"),
    ("APPROVED", "CANCELLED"),
    ("APPROVED", "APPROVED"),
    ("PREPARED", "CANCELLED"),
    ("DELIVERED", "CANCELLED"),
    ("CANCELLED", "PENDING"),
    ("CANCELLED", "APPROVED"),
])
def test_other_transitions_are_rejected(current, requested):
    assert not can_transition(current, requested)
    with pytest.raises(InvalidTransition) as exc_info:
        validate_transition(current, requested, item_id="item-1")

    context = exc_info.value.context
    assert context["current_status"] == current
    assert context["requested_status"] == requested
    assert context["item_id"] == "item-1"


def test_terminal_states():
    assert is_terminal("DELIVERED")
    assert is_terminal("CANCELLED")
    assert not is_terminal("PENDING")
    assert not is_terminal("PREPARED")


def test_rollup_is_least_advanced_live_status():
    rollup = derive_rollup([
        item("APPROVED", approved=T0),
        item("PREPARED", approved=T0, prepared=T0 + timedelta(hours=1)),
        item("CANCELLED", cancelled=T0),
    ])

    assert rollup.status == "APPROVED"
    assert rollup.approved_at == T0
    assert rollup.prepared_at is None


def test_rollup_prepared_at_waits_for_every_live_item():
    rollup = derive_rollup([
        item("PREPARED", approved=T0, prepared=T0 + timedelta(hours=1)),
        item("PREPARED", approved=T0 + timedelta(minutes=5), prepared=T0 + timedelta(hours=2)),
    ])

    assert rollup.status == "PREPARED"
    assert rollup.approved_at == T0
    assert rollup.prepared_at == T0 + timedelta(hours=2)


def test_rollup_partial_when_only_some_delivered():
    rollup = derive_rollup([
        item("DELIVERED", approved=T0, prepared=T0, delivered=T0 + timedelta(hours=3)),
        item("PENDING"),
    ])

    assert rollup.status == "PARTIAL"
    assert rollup.delivered_at is None


def test_rollup_completed_ignores_cancelled_items():
    rollup = derive_rollup([
        item("DELIVERED", approved=T0, prepared=T0, delivered=T0 + timedelta(hours=3)),
        item("DELIVERED", approved=T0, prepared=T0, delivered=T0 + timedelta(hours=5)),
        item("CANCELLED", cancelled=T0),
    ])

    assert rollup.status == "COMPLETED"
    assert rollup.delivered_at == T0 + timedelta(hours=5)
    assert rollup.cancelled_at is None


def test_rollup_cancelled_when_no_live_items():
    rollup = derive_rollup([
        item("CANCELLED", cancelled=T0),
        item("CANCELLED", cancelled=T0 + timedelta(minutes=10)),
    ])

    assert rollup.status == "CANCELLED"
    assert rollup.cancelled_at == T0 + timedelta(minutes=10)


def test_rollup_all_pending():
    rollup = derive_rollup([item("PENDING"), item("PENDING")])

    assert rollup.status == "PENDING"
    assert rollup.approved_at is None
