"""Time-driven lifecycle transitions.

The sweep is the only actor that forces open or locked groups into
``cancelled``. It runs every group through the same per-group lock that
caller operations use and re-validates the freshly loaded aggregate, so a
host racing the sweep never acts on a stale snapshot.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from .cache import GroupDiscountCache
from .clock import Clock, utc_now
from .errors import InvalidState
from .events import EventPublisher, GroupEvent
from .locks import GroupLockRegistry
from .membership import MembershipManager
from .models import DeliveryMode, GroupOrder, GroupState, SweepResult
from .ports import GroupOrderStorePort, SweepPort
from .state_machine import MIN_ACTIVE_MEMBERS, GroupOrderStateMachine

logger = logging.getLogger(__name__)


@dataclass
class _Expiry:
    state: GroupState | None = None
    members_removed: int = 0
    members_refunded: int = 0
    events: list[GroupEvent] = field(default_factory=list)


class ExpiryService(SweepPort):
    """Implements the expiry sweep.

    For every group whose ``expires_at`` has elapsed:
    - open: purge non-host members without items, then lock the group with
      a fresh payment window, or cancel it if fewer than two active members
      remain or it still cannot lock
    - locked: cancel (payment window elapsed)
    - on cancellation in member_address mode, flag paid members refunded
    """

    def __init__(
        self,
        groups: GroupOrderStorePort,
        membership: MembershipManager,
        state_machine: GroupOrderStateMachine,
        locks: GroupLockRegistry,
        publisher: EventPublisher,
        discount_cache: GroupDiscountCache | None = None,
        clock: Clock | None = None,
    ):
        self.groups = groups
        self.membership = membership
        self.state_machine = state_machine
        self.locks = locks
        self.publisher = publisher
        self.discount_cache = discount_cache
        self._clock = clock or utc_now

    async def execute_sweep(self) -> SweepResult:
        """Apply expiry rules to every due group. Returns a summary."""
        now = self._clock()
        if self.discount_cache is not None:
            purged = self.discount_cache.purge_expired()
            if purged:
                logger.debug(f"Dropped {purged} expired group discounts")
        try:
            due = await self.groups.query(
                states=[GroupState.OPEN, GroupState.LOCKED], expires_before=now
            )
        except Exception as e:
            logger.error(f"Failed to query expired groups: {e}", exc_info=True)
            return SweepResult(
                groups_examined=0,
                groups_locked=0,
                groups_cancelled=0,
                members_removed=0,
                members_refunded=0,
                timestamp=now,
            )

        locked = cancelled = removed = refunded = failed = 0
        for group in due:
            try:
                expiry = await self._expire(group.id, now)
            except Exception as e:
                failed += 1
                logger.error(
                    f"Failed to expire group {group.id}: {e}",
                    extra={"group_id": group.id},
                    exc_info=True,
                )
                continue
            await self.publisher.publish_all(expiry.events)
            removed += expiry.members_removed
            refunded += expiry.members_refunded
            if expiry.state == GroupState.LOCKED:
                locked += 1
            elif expiry.state == GroupState.CANCELLED:
                cancelled += 1

        result = SweepResult(
            groups_examined=len(due),
            groups_locked=locked,
            groups_cancelled=cancelled,
            members_removed=removed,
            members_refunded=refunded,
            timestamp=now,
            groups_failed=failed,
        )
        if due:
            logger.info(
                f"Sweep examined {len(due)} groups: {locked} locked, {cancelled} cancelled",
                extra={
                    "groups_examined": len(due),
                    "groups_locked": locked,
                    "groups_cancelled": cancelled,
                    "members_removed": removed,
                    "groups_failed": failed,
                },
            )
        return result

    async def expire_group(self, group_id: str) -> GroupState | None:
        expiry = await self._expire(group_id, self._clock())
        await self.publisher.publish_all(expiry.events)
        return expiry.state

    async def _expire(self, group_id: str, now: datetime) -> _Expiry:
        expiry = _Expiry()
        async with self.locks.hold(group_id):
            group = await self.groups.get_by_id(group_id)
            if group is None or group.state.is_terminal or not group.is_expired(now):
                return expiry

            if group.state == GroupState.OPEN:
                self._expire_open(group, now, expiry)
            else:
                self._cancel(group, "payment window elapsed", expiry)

            await self.groups.save(group)

        if expiry.state == GroupState.CANCELLED and self.discount_cache is not None:
            self.discount_cache.pop(group_id)
        return expiry

    def _expire_open(self, group: GroupOrder, now: datetime, expiry: _Expiry) -> None:
        for member in group.members_without_items():
            if member.is_host:
                continue
            outcome = self.membership.remove_member(group, member)
            expiry.members_removed += 1
            expiry.events.extend(outcome.events(group))
        if expiry.members_removed:
            tier = self.membership.aggregator.on_tier_change(group)
            expiry.events.extend(tier.events())

        if group.active_member_count < MIN_ACTIVE_MEMBERS:
            self._cancel(group, "not enough members before the deadline", expiry)
            return
        try:
            self.state_machine.lock(group, now)
        except InvalidState as e:
            self._cancel(group, e.reason, expiry)
            return
        expiry.state = GroupState.LOCKED
        expiry.events.append(
            GroupEvent(
                group.id,
                "group-locked",
                {
                    "reason": "deadline reached",
                    "expires_at": group.expires_at.isoformat(),
                    "active_members": group.active_member_count,
                },
            )
        )

    def _cancel(self, group: GroupOrder, reason: str, expiry: _Expiry) -> None:
        self.state_machine.cancel(group)
        if group.delivery_mode == DeliveryMode.MEMBER_ADDRESS:
            for member in group.members:
                if member.has_paid and member.is_active:
                    member.mark_refunded()
                    expiry.members_refunded += 1
        expiry.state = GroupState.CANCELLED
        expiry.events.append(
            GroupEvent(
                group.id,
                "group-cancelled",
                {"reason": reason, "members_refunded": expiry.members_refunded},
            )
        )
        logger.info(
            f"Group {group.id} cancelled: {reason}",
            extra={"group_id": group.id, "members_refunded": expiry.members_refunded},
        )
