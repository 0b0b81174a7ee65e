"""Caller-facing service for group orders.

Every mutating operation follows the same discipline: take the group's
lock, re-load the aggregate, delegate to the membership manager, item
aggregator or state machine, persist, release the lock, then publish the
resulting events.
"""

import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime

from .aggregator import ItemAggregator, item_payload
from .cache import GroupDiscountCache
from .checkout import CheckoutOrchestrator
from .clock import Clock, utc_now
from .errors import InvalidRequest, InvalidState, NotFound, PersistenceFailed
from .events import EventPublisher, GroupEvent
from .locks import GroupLockRegistry
from .membership import MembershipManager, normalize_join_code
from .models import (
    CheckoutResult,
    DeliveryMode,
    GroupDiscount,
    GroupOrder,
    GroupState,
    LineItem,
    Member,
    MemberStatus,
    OrderStatus,
    SettledOrder,
)
from .persistence import guarded
from .ports import GroupOrderStorePort, SettledOrderStorePort

logger = logging.getLogger(__name__)

JOIN_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
JOIN_CODE_LENGTH = 6
JOIN_CODE_ATTEMPTS = 10
MIN_TARGET_MEMBERS = 2
MAX_TARGET_MEMBERS = 100

# Statuses the fulfillment process may set once a group has settled.
FULFILLMENT_STATUSES = frozenset(
    {
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.RETURNED,
    }
)

_UNSET = object()


def generate_join_code(length: int = JOIN_CODE_LENGTH) -> str:
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(length))


class GroupOrderService:
    """Entry point for every group-buy operation a user can perform."""

    def __init__(
        self,
        groups: GroupOrderStorePort,
        orders: SettledOrderStorePort,
        membership: MembershipManager,
        aggregator: ItemAggregator,
        checkout: CheckoutOrchestrator,
        locks: GroupLockRegistry,
        publisher: EventPublisher,
        discount_cache: GroupDiscountCache,
        invite_base_url: str = "",
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
    ):
        self.groups = groups
        self.orders = orders
        self.membership = membership
        self.aggregator = aggregator
        self.checkout = checkout
        self.locks = locks
        self.publisher = publisher
        self.discount_cache = discount_cache
        self.invite_base_url = invite_base_url.rstrip("/")
        self._clock = clock or utc_now
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    def invite_link(self, group: GroupOrder) -> str:
        return f"{self.invite_base_url}/group/{group.invite_token}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_group(
        self,
        host_user_id: str,
        store_id: str,
        name: str,
        expires_at: datetime | None = None,
        join_expires_at: datetime | None = None,
        target_member_count: int | None = None,
        delivery_mode: DeliveryMode = DeliveryMode.HOST_ADDRESS,
    ) -> GroupOrder:
        """Open a new group with ``host_user_id`` as its host member."""
        now = self._clock()
        if not name or not name.strip():
            raise InvalidRequest("Group name is required")
        if expires_at is not None and expires_at <= now:
            raise InvalidRequest("expires_at must be in the future")
        if join_expires_at is not None and join_expires_at <= now:
            raise InvalidRequest("join_expires_at must be in the future")
        if target_member_count is not None:
            self._validate_target(target_member_count)

        group = GroupOrder(
            id=self._new_id(),
            join_code=await self._unique_join_code(),
            invite_token=str(uuid.uuid4()),
            name=name.strip(),
            store_id=store_id,
            host_user_id=host_user_id,
            state=GroupState.OPEN,
            created_at=now,
            delivery_mode=delivery_mode,
            expires_at=expires_at,
            join_expires_at=join_expires_at,
            target_member_count=target_member_count,
            members=[
                Member(
                    id=self._new_id(),
                    user_id=host_user_id,
                    is_host=True,
                    status=MemberStatus.JOINED,
                    joined_at=now,
                )
            ],
        )
        await guarded("save group", self.groups.save(group))
        logger.info(
            f"Group {group.id} created by {host_user_id}",
            extra={"group_id": group.id, "store_id": store_id},
        )
        await self.publisher.publish(
            GroupEvent(
                group.id,
                "group-created",
                {
                    "group_id": group.id,
                    "join_code": group.join_code,
                    "invite_link": self.invite_link(group),
                },
                user_id=host_user_id,
            )
        )
        return group

    async def update_group(
        self,
        group_id: str,
        user_id: str,
        name: str | None = None,
        delivery_mode: DeliveryMode | None = None,
        expires_at: datetime | None | object = _UNSET,
        target_member_count: int | None = None,
    ) -> GroupOrder:
        """Host edits group settings.

        ``expires_at=None`` clears the deadline; leaving it out keeps it.
        """
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            self.membership.require_host(group, user_id)
            if group.state.is_terminal:
                raise InvalidState(f"Group is {group.state.value}")

            changed = []
            if name is not None and name.strip():
                group.name = name.strip()
                changed.append("name")
            if delivery_mode is not None and delivery_mode != group.delivery_mode:
                if group.state != GroupState.OPEN:
                    raise InvalidState("Delivery mode can only change while the group is open")
                group.delivery_mode = delivery_mode
                changed.append("delivery_mode")
            if expires_at is not _UNSET:
                if expires_at is not None and expires_at <= self._clock():
                    raise InvalidRequest("expires_at must be in the future")
                group.expires_at = expires_at
                changed.append("expires_at")
            if target_member_count is not None:
                self._validate_target(target_member_count)
                if group.state != GroupState.OPEN:
                    raise InvalidState("Target cannot change once the group is locked")
                group.target_member_count = target_member_count
                changed.append("target_member_count")

            if not changed:
                raise InvalidRequest("No fields to update")
            await guarded("save group", self.groups.save(group))

        await self.publisher.publish(
            GroupEvent(group.id, "group-updated", {"fields": changed})
        )
        return group

    async def delete_group(self, group_id: str, user_id: str) -> None:
        """Host deletes a group that has no settled orders."""
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            self.membership.require_host(group, user_id)
            settled = await guarded("list settled orders", self.orders.list_for_group(group_id))
            if settled or group.settled_order_ids:
                raise InvalidState("A group with settled orders cannot be deleted")
            if any(m.pending_order_id for m in group.members):
                raise InvalidState("A payment is in progress for this group")
            await guarded("delete group", self.groups.delete(group_id))
        self.discount_cache.pop(group_id)
        logger.info(f"Group {group_id} deleted", extra={"group_id": group_id})
        await self.publisher.publish(
            GroupEvent(group_id, "group-deleted", {"group_id": group_id})
        )

    async def lock(self, group_id: str, user_id: str) -> GroupOrder:
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            self.membership.lock(group, user_id)
            await guarded("save group", self.groups.save(group))
        await self.publisher.publish(
            GroupEvent(
                group.id,
                "group-manual-locked",
                {"expires_at": group.expires_at.isoformat()},
            )
        )
        return group

    async def unlock(self, group_id: str, user_id: str) -> GroupOrder:
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            self.membership.unlock(group, user_id)
            await guarded("save group", self.groups.save(group))
        # Items may change again, so a cached group discount is stale.
        self.discount_cache.pop(group_id)
        await self.publisher.publish(
            GroupEvent(
                group.id,
                "group-unlocked",
                {"expires_at": group.expires_at.isoformat()},
            )
        )
        return group

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_group(self, group_id: str) -> GroupOrder:
        return await self._load(group_id)

    async def get_group_by_join_code(self, join_code: str) -> GroupOrder:
        code = normalize_join_code(join_code)
        group = await guarded("load group", self.groups.get_by_join_code(code))
        if group is None:
            raise NotFound(f"No group with join code {code}")
        return group

    async def get_group_by_invite_token(self, invite_token: str) -> GroupOrder:
        group = await guarded("load group", self.groups.get_by_invite_token(invite_token))
        if group is None:
            raise NotFound("Invite link is invalid or the group no longer exists")
        return group

    async def list_user_groups(self, user_id: str) -> list[GroupOrder]:
        """Groups where ``user_id`` is an active member, newest first."""
        groups = await guarded("query groups", self.groups.query(user_id=user_id))
        result = []
        for group in groups:
            member = group.member_for_user(user_id)
            if member is not None and member.is_active:
                result.append(group)
        return result

    async def list_group_orders(self, group_id: str) -> list[SettledOrder]:
        await self._load(group_id)
        return await guarded("list settled orders", self.orders.list_for_group(group_id))

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def join(
        self, group_id: str, user_id: str, join_code: str | None = None
    ) -> Member:
        return await self._join(group_id, user_id, join_code, code_verified=False)

    async def join_by_code(self, join_code: str, user_id: str) -> Member:
        group = await self.get_group_by_join_code(join_code)
        return await self._join(group.id, user_id, join_code, code_verified=True)

    async def join_by_invite(self, invite_token: str, user_id: str) -> Member:
        group = await self.get_group_by_invite_token(invite_token)
        return await self._join(group.id, user_id, None, code_verified=True)

    async def leave(self, group_id: str, user_id: str) -> None:
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            outcome = self.membership.leave(group, user_id)
            await guarded("save group", self.groups.save(group))
        await self.publisher.publish_all(outcome.events(group))

    async def assign_address(self, group_id: str, user_id: str, address_id: str) -> Member:
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            member = await self.membership.assign_address(group, user_id, address_id)
            await guarded("save group", self.groups.save(group))
        await self.publisher.publish(
            GroupEvent(
                group.id,
                "member-address-updated",
                {"user_id": user_id, "member_id": member.id, "address_id": address_id},
            )
        )
        return member

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def add_item(
        self,
        group_id: str,
        user_id: str,
        product_id: str,
        variant_id: str | None = None,
        quantity: int = 1,
        note: str | None = None,
        pricing_rule_id: str | None = None,
    ) -> LineItem:
        """Add a selection for the caller; may auto-lock a group at its target."""
        events = []
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            member = self.membership.require_member(group, user_id)
            item = await self.aggregator.add_item(
                group,
                member,
                product_id,
                variant_id,
                quantity,
                note=note,
                pricing_rule_id=pricing_rule_id,
            )
            events.append(GroupEvent(group.id, "item-added", item_payload(item)))
            locked, _ = self.membership.try_auto_lock(group)
            if locked:
                events.append(
                    GroupEvent(
                        group.id,
                        "group-auto-locked",
                        {
                            "target_count": group.target_member_count,
                            "expires_at": group.expires_at.isoformat(),
                        },
                    )
                )
            await guarded("save group", self.groups.save(group))
        await self.publisher.publish_all(events)
        return item

    async def update_item(
        self,
        group_id: str,
        user_id: str,
        item_id: str,
        quantity: int | None = None,
        note: str | None = None,
    ) -> LineItem:
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            member = self.membership.require_member(group, user_id)
            item = await self.aggregator.update_item(
                group, member, item_id, quantity=quantity, note=note
            )
            await guarded("save group", self.groups.save(group))
        await self.publisher.publish(
            GroupEvent(group.id, "item-updated", item_payload(item))
        )
        return item

    async def remove_item(self, group_id: str, user_id: str, item_id: str) -> None:
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            member = self.membership.require_member(group, user_id)
            item = self.aggregator.remove_item(group, member, item_id)
            await guarded("save group", self.groups.save(group))
        await self.publisher.publish(
            GroupEvent(group.id, "item-removed", {"item_id": item.id})
        )

    # ------------------------------------------------------------------
    # Checkout and fulfillment
    # ------------------------------------------------------------------

    async def checkout_group(
        self,
        group_id: str,
        user_id: str,
        payment_method_id: str,
        address_id: str | None = None,
        voucher_code: str | None = None,
    ) -> CheckoutResult:
        return await self.checkout.checkout_group(
            group_id, user_id, payment_method_id, address_id, voucher_code
        )

    async def checkout_member(
        self,
        group_id: str,
        user_id: str,
        payment_method_id: str,
        address_id: str | None = None,
        voucher_code: str | None = None,
    ) -> CheckoutResult:
        return await self.checkout.checkout_member(
            group_id, user_id, payment_method_id, address_id, voucher_code
        )

    async def apply_group_voucher(
        self, group_id: str, user_id: str, voucher_code: str
    ) -> GroupDiscount:
        return await self.checkout.apply_group_voucher(group_id, user_id, voucher_code)

    async def record_payment_result(
        self,
        order_id: str,
        success: bool,
        transaction_ref: str | None = None,
        reason: str | None = None,
    ) -> SettledOrder | None:
        return await self.checkout.record_payment_result(
            order_id, success, transaction_ref, reason
        )

    async def update_order_status(
        self, group_id: str, status: OrderStatus, note: str | None = None
    ) -> list[SettledOrder]:
        """Set the group's fulfillment status and cascade it to every settled order."""
        if status not in FULFILLMENT_STATUSES:
            raise InvalidRequest(f"{status.value} is not a fulfillment status")
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            if group.state != GroupState.COMPLETED:
                raise InvalidState(
                    f"Fulfillment starts after the group completes (state: {group.state.value})"
                )
            now = self._clock()
            orders = await guarded("list settled orders", self.orders.list_for_group(group_id))
            history_note = note or f"Bulk update from group {group_id}"
            for order in orders:
                order.change_status(status, now, history_note)
                await guarded("save settled order", self.orders.save(order))
            old_status = group.order_status
            group.order_status = status
            await guarded("save group", self.groups.save(group))

        logger.info(
            f"Group {group_id} fulfillment status -> {status.value}",
            extra={"group_id": group_id, "updated_orders": len(orders)},
        )
        await self.publisher.publish(
            GroupEvent(
                group_id,
                "order-status-updated",
                {
                    "old_status": old_status.value if old_status else None,
                    "order_status": status.value,
                    "updated_orders": len(orders),
                },
            )
        )
        return orders

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _join(
        self,
        group_id: str,
        user_id: str,
        join_code: str | None,
        code_verified: bool,
    ) -> Member:
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            outcome = self.membership.join(
                group, user_id, join_code=join_code, code_verified=code_verified
            )
            if outcome.created:
                await guarded("save group", self.groups.save(group))
        await self.publisher.publish_all(outcome.events(group))
        return outcome.member

    async def _load(self, group_id: str) -> GroupOrder:
        group = await guarded("load group", self.groups.get_by_id(group_id))
        if group is None:
            raise NotFound(f"Group {group_id} not found")
        return group

    async def _unique_join_code(self) -> str:
        for _ in range(JOIN_CODE_ATTEMPTS):
            code = generate_join_code()
            existing = await guarded("load group", self.groups.get_by_join_code(code))
            if existing is None:
                return code
        raise PersistenceFailed("Could not allocate a unique join code")

    @staticmethod
    def _validate_target(target_member_count: int) -> None:
        if not MIN_TARGET_MEMBERS <= target_member_count <= MAX_TARGET_MEMBERS:
            raise InvalidRequest(
                f"target_member_count must be between {MIN_TARGET_MEMBERS} "
                f"and {MAX_TARGET_MEMBERS}"
            )
