"""Tests for the group order lifecycle state machine.

Covers the transition table, lock preconditions, unlock guards and the
deadlines each transition sets.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from groupbuy.core.errors import InvalidState
from groupbuy.core.models import (
    DeliveryMode,
    GroupOrder,
    GroupState,
    LineItem,
    Member,
    MemberStatus,
    OrderStatus,
)
from groupbuy.core.state_machine import GroupOrderStateMachine

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


# ============================================================================
# Test Fixtures
# ============================================================================


def make_group(
    member_count: int = 2,
    with_items: bool = True,
    with_addresses: bool = False,
    delivery_mode: DeliveryMode = DeliveryMode.HOST_ADDRESS,
    state: GroupState = GroupState.OPEN,
) -> GroupOrder:
    """Build a group with ``member_count`` active members (host first)."""
    members = [
        Member(
            id=f"m{i}",
            user_id=f"u{i}",
            is_host=i == 0,
            status=MemberStatus.JOINED,
            joined_at=NOW,
            address_id=f"addr-{i}" if with_addresses else None,
        )
        for i in range(member_count)
    ]
    items = (
        [
            LineItem(
                id=f"item-{m.id}",
                member_id=m.id,
                product_id="prod-1",
                variant_id=None,
                quantity=1,
                price=Decimal("100.00"),
                base_unit_price=Decimal("100.00"),
            )
            for m in members
        ]
        if with_items
        else []
    )
    return GroupOrder(
        id="group-1",
        join_code="ABC234",
        invite_token="token-1",
        name="Team lunch",
        store_id="store-1",
        host_user_id="u0",
        state=state,
        created_at=NOW,
        delivery_mode=delivery_mode,
        members=members,
        items=items,
    )


@pytest.fixture
def machine() -> GroupOrderStateMachine:
    return GroupOrderStateMachine(
        payment_window=timedelta(hours=24), unlock_extension=timedelta(hours=1)
    )


# ============================================================================
# Transition table
# ============================================================================


class TestTransitionTable:
    """Only the documented edges are allowed."""

    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            (GroupState.OPEN, GroupState.LOCKED, True),
            (GroupState.OPEN, GroupState.CANCELLED, True),
            (GroupState.OPEN, GroupState.COMPLETED, False),
            (GroupState.LOCKED, GroupState.OPEN, True),
            (GroupState.LOCKED, GroupState.COMPLETED, True),
            (GroupState.LOCKED, GroupState.CANCELLED, True),
            (GroupState.COMPLETED, GroupState.OPEN, False),
            (GroupState.COMPLETED, GroupState.CANCELLED, False),
            (GroupState.CANCELLED, GroupState.OPEN, False),
            (GroupState.CANCELLED, GroupState.LOCKED, False),
        ],
    )
    def test_can_transition(
        self,
        machine: GroupOrderStateMachine,
        current: GroupState,
        target: GroupState,
        allowed: bool,
    ) -> None:
        assert machine.can_transition(current, target) is allowed

    def test_terminal_states(self) -> None:
        assert GroupState.COMPLETED.is_terminal
        assert GroupState.CANCELLED.is_terminal
        assert not GroupState.OPEN.is_terminal
        assert not GroupState.LOCKED.is_terminal

    def test_complete_from_open_is_rejected(self, machine: GroupOrderStateMachine) -> None:
        group = make_group()
        with pytest.raises(InvalidState, match="Cannot move group from open to completed"):
            machine.complete(group)
        assert group.state == GroupState.OPEN


# ============================================================================
# Locking
# ============================================================================


class TestLock:
    """Tests for OPEN -> LOCKED."""

    def test_lock_sets_payment_window(self, machine: GroupOrderStateMachine) -> None:
        group = make_group()
        machine.lock(group, NOW)

        assert group.state == GroupState.LOCKED
        assert group.expires_at == NOW + timedelta(hours=24)

    def test_lock_requires_two_active_members(self, machine: GroupOrderStateMachine) -> None:
        group = make_group(member_count=1)

        with pytest.raises(InvalidState, match="insufficient active members"):
            machine.lock(group, NOW)
        assert group.state == GroupState.OPEN

    def test_left_members_do_not_count(self, machine: GroupOrderStateMachine) -> None:
        group = make_group(member_count=2)
        group.members[1].status = MemberStatus.LEFT

        assert machine.lock_blockers(group) == [
            "insufficient active members (1 of 2 required)"
        ]

    def test_lock_requires_items_for_every_member(
        self, machine: GroupOrderStateMachine
    ) -> None:
        group = make_group(member_count=3)
        group.items = [i for i in group.items if i.member_id != "m2"]

        with pytest.raises(InvalidState, match="members missing line items: u2"):
            machine.lock(group, NOW)

    def test_member_address_mode_requires_addresses(
        self, machine: GroupOrderStateMachine
    ) -> None:
        group = make_group(delivery_mode=DeliveryMode.MEMBER_ADDRESS)

        blockers = machine.lock_blockers(group)
        assert blockers == ["member missing delivery address: u0, u1"]

    def test_host_address_mode_ignores_member_addresses(
        self, machine: GroupOrderStateMachine
    ) -> None:
        group = make_group(delivery_mode=DeliveryMode.HOST_ADDRESS)
        assert machine.lock_blockers(group) == []

    def test_all_blockers_reported_together(self, machine: GroupOrderStateMachine) -> None:
        group = make_group(
            member_count=1, with_items=False, delivery_mode=DeliveryMode.MEMBER_ADDRESS
        )

        with pytest.raises(InvalidState) as exc_info:
            machine.ensure_lockable(group)
        reason = exc_info.value.reason
        assert reason.startswith("Cannot lock group: ")
        assert "insufficient active members" in reason
        assert "members missing line items" in reason
        assert "member missing delivery address" in reason

    def test_lock_twice_reports_already_locked(self, machine: GroupOrderStateMachine) -> None:
        group = make_group()
        machine.lock(group, NOW)

        with pytest.raises(InvalidState, match="Group already locked"):
            machine.lock(group, NOW)


# ============================================================================
# Unlocking, completion and cancellation
# ============================================================================


class TestUnlock:
    """Tests for LOCKED -> OPEN."""

    def test_unlock_grants_extension(self, machine: GroupOrderStateMachine) -> None:
        group = make_group(state=GroupState.LOCKED)
        later = NOW + timedelta(hours=3)

        machine.unlock(group, later)

        assert group.state == GroupState.OPEN
        assert group.expires_at == later + timedelta(hours=1)

    def test_unlock_after_payment_is_rejected(self, machine: GroupOrderStateMachine) -> None:
        group = make_group(state=GroupState.LOCKED)
        group.members[1].mark_paid("order-1")

        with pytest.raises(InvalidState, match="a member has already paid"):
            machine.unlock(group, NOW)
        assert group.state == GroupState.LOCKED

    def test_unlock_during_pending_payment_is_rejected(
        self, machine: GroupOrderStateMachine
    ) -> None:
        group = make_group(state=GroupState.LOCKED)
        group.members[1].pending_order_id = "order-1"

        with pytest.raises(InvalidState, match="payment in progress for u1"):
            machine.unlock(group, NOW)

    def test_unlock_open_group_is_rejected(self, machine: GroupOrderStateMachine) -> None:
        with pytest.raises(InvalidState, match="Group already open"):
            machine.unlock(make_group(), NOW)


class TestTerminalTransitions:
    def test_complete_confirms_order_status(self, machine: GroupOrderStateMachine) -> None:
        group = make_group(state=GroupState.LOCKED)
        machine.complete(group)

        assert group.state == GroupState.COMPLETED
        assert group.order_status == OrderStatus.CONFIRMED

    def test_cancel_from_open_and_locked(self, machine: GroupOrderStateMachine) -> None:
        open_group = make_group()
        locked_group = make_group(state=GroupState.LOCKED)

        machine.cancel(open_group)
        machine.cancel(locked_group)

        assert open_group.state == GroupState.CANCELLED
        assert locked_group.state == GroupState.CANCELLED

    def test_cancelled_group_cannot_be_cancelled_again(
        self, machine: GroupOrderStateMachine
    ) -> None:
        group = make_group(state=GroupState.CANCELLED)
        with pytest.raises(InvalidState, match="Group already cancelled"):
            machine.cancel(group)

    def test_completed_group_cannot_be_cancelled(
        self, machine: GroupOrderStateMachine
    ) -> None:
        group = make_group(state=GroupState.COMPLETED)
        with pytest.raises(InvalidState, match="Cannot move group from completed"):
            machine.cancel(group)
