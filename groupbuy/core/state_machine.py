"""Lifecycle state machine for group orders.

Owns the transition table and validates every transition's preconditions.
The machine mutates the in-memory aggregate only; callers persist it while
still holding the group's lock.
"""

import logging
from datetime import datetime, timedelta

from .errors import InvalidState
from .models import DeliveryMode, GroupOrder, GroupState, OrderStatus

logger = logging.getLogger(__name__)

MIN_ACTIVE_MEMBERS = 2


class GroupOrderStateMachine:
    """Validates and applies lifecycle transitions.

    Transition table:
        OPEN -> LOCKED      (host lock, auto-lock on target, expiry sweep)
        OPEN -> CANCELLED   (expiry sweep)
        LOCKED -> OPEN      (host unlock, only while nobody has paid)
        LOCKED -> COMPLETED (settlement succeeded)
        LOCKED -> CANCELLED (expiry sweep)
    """

    TRANSITIONS: dict[GroupState, frozenset[GroupState]] = {
        GroupState.OPEN: frozenset({GroupState.LOCKED, GroupState.CANCELLED}),
        GroupState.LOCKED: frozenset(
            {GroupState.OPEN, GroupState.COMPLETED, GroupState.CANCELLED}
        ),
        GroupState.COMPLETED: frozenset(),
        GroupState.CANCELLED: frozenset(),
    }

    def __init__(
        self,
        payment_window: timedelta = timedelta(hours=24),
        unlock_extension: timedelta = timedelta(hours=1),
    ):
        """Initialize the state machine.

        Args:
            payment_window: Deadline granted for payment once a group locks.
            unlock_extension: Deadline granted to an unlocked group.
        """
        self.payment_window = payment_window
        self.unlock_extension = unlock_extension

    def can_transition(self, current: GroupState, target: GroupState) -> bool:
        return target in self.TRANSITIONS[current]

    def lock_blockers(self, group: GroupOrder) -> list[str]:
        """Return the reasons preventing ``group`` from locking (empty if none)."""
        blockers: list[str] = []
        active = group.active_member_count
        if active < MIN_ACTIVE_MEMBERS:
            blockers.append(
                f"insufficient active members ({active} of {MIN_ACTIVE_MEMBERS} required)"
            )
        without_items = group.members_without_items()
        if without_items:
            users = ", ".join(m.user_id for m in without_items)
            blockers.append(f"members missing line items: {users}")
        if group.delivery_mode == DeliveryMode.MEMBER_ADDRESS:
            without_address = group.members_without_address()
            if without_address:
                users = ", ".join(m.user_id for m in without_address)
                blockers.append(f"member missing delivery address: {users}")
        return blockers

    def ensure_lockable(self, group: GroupOrder) -> None:
        """Raise InvalidState unless ``group`` may move from OPEN to LOCKED."""
        self._ensure_transition(group, GroupState.LOCKED)
        blockers = self.lock_blockers(group)
        if blockers:
            raise InvalidState("Cannot lock group: " + "; ".join(blockers))

    def lock(self, group: GroupOrder, now: datetime) -> None:
        """Freeze membership and items and open the payment window."""
        self.ensure_lockable(group)
        group.state = GroupState.LOCKED
        group.expires_at = now + self.payment_window
        logger.info(
            f"Group {group.id} locked",
            extra={
                "group_id": group.id,
                "active_members": group.active_member_count,
                "expires_at": group.expires_at.isoformat(),
            },
        )

    def unlock(self, group: GroupOrder, now: datetime) -> None:
        """Return a locked group to OPEN. Only legal while nobody has paid."""
        self._ensure_transition(group, GroupState.OPEN)
        if group.any_member_paid():
            raise InvalidState("Cannot unlock group: a member has already paid")
        pending = [m.user_id for m in group.members if m.pending_order_id]
        if pending:
            raise InvalidState(
                "Cannot unlock group: payment in progress for " + ", ".join(pending)
            )
        group.state = GroupState.OPEN
        group.expires_at = now + self.unlock_extension
        logger.info(f"Group {group.id} unlocked", extra={"group_id": group.id})

    def complete(self, group: GroupOrder) -> None:
        """Mark settlement as finished."""
        self._ensure_transition(group, GroupState.COMPLETED)
        group.state = GroupState.COMPLETED
        group.order_status = OrderStatus.CONFIRMED
        logger.info(f"Group {group.id} completed", extra={"group_id": group.id})

    def cancel(self, group: GroupOrder) -> None:
        """Move an open or locked group to the terminal CANCELLED state."""
        self._ensure_transition(group, GroupState.CANCELLED)
        group.state = GroupState.CANCELLED
        logger.info(f"Group {group.id} cancelled", extra={"group_id": group.id})

    def _ensure_transition(self, group: GroupOrder, target: GroupState) -> None:
        if group.state == target:
            raise InvalidState(f"Group already {target.value}")
        if not self.can_transition(group.state, target):
            raise InvalidState(
                f"Cannot move group from {group.state.value} to {target.value}"
            )
