"""Group membership: join, leave, host designation and delivery addresses.

Every operation here expects the caller to hold the group's lock and to
persist the aggregate afterwards. Results carry the events to publish once
the change is committed.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from .aggregator import ItemAggregator, TierChange
from .clock import Clock, utc_now
from .errors import (
    CapacityExceeded,
    InvalidState,
    NotFound,
    PermissionDenied,
    ServiceUnavailable,
)
from .events import GroupEvent
from .models import GroupOrder, GroupState, LineItem, Member, MemberStatus
from .persistence import guarded
from .ports import AddressBookPort
from .state_machine import GroupOrderStateMachine

logger = logging.getLogger(__name__)


def normalize_join_code(code: str | None) -> str:
    return (code or "").strip().upper()


@dataclass
class JoinOutcome:
    """What a join did to the group."""

    member: Member
    created: bool
    tier: TierChange | None = None
    auto_locked: bool = False
    lock_blockers: list[str] = field(default_factory=list)

    def events(self, group: GroupOrder) -> list[GroupEvent]:
        if not self.created:
            return []
        events = [
            GroupEvent(
                group.id,
                "member-joined",
                {"user_id": self.member.user_id, "member_id": self.member.id},
            )
        ]
        if self.tier is not None:
            events.extend(self.tier.events())
        if self.auto_locked:
            events.append(
                GroupEvent(
                    group.id,
                    "group-auto-locked",
                    {
                        "target_count": group.target_member_count,
                        "expires_at": group.expires_at.isoformat()
                        if group.expires_at
                        else None,
                    },
                )
            )
        elif self.lock_blockers:
            events.append(
                GroupEvent(
                    group.id,
                    "target-reached-warning",
                    {
                        "target_count": group.target_member_count,
                        "blockers": list(self.lock_blockers),
                        "members_without_items": [
                            m.user_id for m in group.members_without_items()
                        ],
                        "members_without_address": [
                            m.user_id for m in group.members_without_address()
                        ],
                    },
                )
            )
        return events


@dataclass
class RemovalOutcome:
    """A member leaving (or being swept out of) a group."""

    member: Member
    removed_items: list[LineItem]
    deleted: bool
    tier: TierChange | None = None

    def events(self, group: GroupOrder) -> list[GroupEvent]:
        events = [
            GroupEvent(group.id, "item-removed", {"item_id": item.id})
            for item in self.removed_items
        ]
        events.append(
            GroupEvent(
                group.id,
                "member-left",
                {"user_id": self.member.user_id, "member_id": self.member.id},
            )
        )
        if self.tier is not None:
            events.extend(self.tier.events())
        return events


class MembershipManager:
    """Enforces membership capacity and eligibility rules."""

    def __init__(
        self,
        state_machine: GroupOrderStateMachine,
        aggregator: ItemAggregator,
        addresses: AddressBookPort,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
    ):
        self.state_machine = state_machine
        self.aggregator = aggregator
        self.addresses = addresses
        self._clock = clock or utc_now
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    def join(
        self,
        group: GroupOrder,
        user_id: str,
        join_code: str | None = None,
        code_verified: bool = False,
    ) -> JoinOutcome:
        """Add ``user_id`` to the group.

        Args:
            group: The group aggregate, loaded under its lock.
            user_id: Joining user.
            join_code: Code supplied by the user when joining by group id.
            code_verified: True when the group was found through its join
                code or invite token, which already proves the invitation.

        Raises:
            InvalidState: If the group is not open or its join window closed.
            PermissionDenied: If the join code does not match.
            CapacityExceeded: If the target member count is already reached.
        """
        now = self._clock()
        if group.state != GroupState.OPEN:
            raise InvalidState(
                f"Group is not open for joining (state: {group.state.value})"
            )
        if group.is_join_window_closed(now):
            raise InvalidState("Group join window has closed")
        if not code_verified and group.join_code != normalize_join_code(join_code):
            raise PermissionDenied("Invalid join code")

        existing = group.member_for_user(user_id)
        if existing is not None and existing.is_active:
            return JoinOutcome(member=existing, created=False)

        if (
            group.target_member_count is not None
            and group.active_member_count >= group.target_member_count
        ):
            raise CapacityExceeded(
                f"Group already has {group.active_member_count} of "
                f"{group.target_member_count} members"
            )

        if existing is not None:
            existing.reactivate()
            existing.joined_at = now
            member = existing
        else:
            member = Member(
                id=self._new_id(),
                user_id=user_id,
                is_host=False,
                status=MemberStatus.JOINED,
                joined_at=now,
            )
            group.members.append(member)

        outcome = JoinOutcome(member=member, created=True)
        outcome.tier = self.aggregator.on_tier_change(group)
        outcome.auto_locked, outcome.lock_blockers = self.try_auto_lock(group)
        logger.info(
            f"User {user_id} joined group {group.id}",
            extra={
                "group_id": group.id,
                "user_id": user_id,
                "active_members": group.active_member_count,
            },
        )
        return outcome

    def leave(self, group: GroupOrder, user_id: str) -> RemovalOutcome:
        """Remove a non-host member and their items from an open group."""
        if group.state != GroupState.OPEN:
            raise InvalidState(
                f"Cannot leave a group that is {group.state.value}"
            )
        member = self.require_member(group, user_id)
        if member.is_host:
            raise PermissionDenied("The host cannot leave the group; delete it instead")
        outcome = self.remove_member(group, member)
        outcome.tier = self.aggregator.on_tier_change(group)
        logger.info(
            f"User {user_id} left group {group.id}",
            extra={"group_id": group.id, "user_id": user_id},
        )
        return outcome

    def remove_member(self, group: GroupOrder, member: Member) -> RemovalOutcome:
        """Purge a member's items and drop the member record.

        A member that already references a settled order keeps its record
        (marked left) so the order stays traceable. The caller is
        responsible for recomputing the tier afterwards.
        """
        removed = self.aggregator.purge_member_items(group, member.id)
        if member.order_id:
            member.mark_left()
            deleted = False
        else:
            group.members.remove(member)
            deleted = True
        return RemovalOutcome(member=member, removed_items=removed, deleted=deleted)

    async def assign_address(
        self, group: GroupOrder, user_id: str, address_id: str
    ) -> Member:
        """Assign one of the caller's own addresses to their member record."""
        if group.state.is_terminal:
            raise InvalidState(f"Group is {group.state.value}")
        member = self.require_member(group, user_id)
        if member.has_paid:
            raise InvalidState("Delivery address cannot change after payment")
        address = await guarded(
            "load address", self.addresses.get_address(address_id), ServiceUnavailable
        )
        if address is None or address.user_id != user_id:
            raise PermissionDenied("Address not found or does not belong to you")
        member.address_id = address.id
        return member

    def lock(self, group: GroupOrder, user_id: str) -> None:
        self.require_host(group, user_id)
        self.state_machine.lock(group, self._clock())

    def unlock(self, group: GroupOrder, user_id: str) -> None:
        self.require_host(group, user_id)
        self.state_machine.unlock(group, self._clock())

    def require_member(self, group: GroupOrder, user_id: str) -> Member:
        """Return the caller's active member record."""
        member = group.member_for_user(user_id)
        if member is None or member.status == MemberStatus.LEFT:
            raise NotFound(f"User {user_id} is not a member of group {group.id}")
        return member

    def require_host(self, group: GroupOrder, user_id: str) -> Member:
        member = group.member_for_user(user_id)
        if member is None or not member.is_host:
            raise PermissionDenied("Only the host can perform this action")
        return member

    def try_auto_lock(self, group: GroupOrder) -> tuple[bool, list[str]]:
        """Lock an open group whose active members reached the target.

        Returns:
            (locked, blockers): blockers lists the unmet lock preconditions
            when the target is reached but the group cannot lock yet.
        """
        if group.state != GroupState.OPEN or group.target_member_count is None:
            return False, []
        if group.active_member_count < group.target_member_count:
            return False, []
        blockers = self.state_machine.lock_blockers(group)
        if blockers:
            logger.info(
                f"Group {group.id} reached its target but cannot lock yet",
                extra={"group_id": group.id, "blockers": blockers},
            )
            return False, blockers
        self.state_machine.lock(group, self._clock())
        return True, []
