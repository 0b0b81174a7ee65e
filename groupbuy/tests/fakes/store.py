"""Fake store implementations for testing."""

import copy
from collections.abc import Sequence
from datetime import datetime

from groupbuy.core.models import GroupOrder, GroupState, SettledOrder
from groupbuy.core.ports import GroupOrderStorePort, SettledOrderStorePort


class FakeGroupOrderStore(GroupOrderStorePort):
    """In-memory group store for testing.

    Aggregates are copied on the way in and out, so a service mutating a
    loaded group does not change what is stored until it saves, the same
    as with a real database.
    """

    def __init__(self) -> None:
        """Initialize with an empty store."""
        self.groups: dict[str, GroupOrder] = {}
        self.save_count = 0
        self.deleted_ids: list[str] = []
        self.query_calls: list[dict] = []
        self.should_fail: bool = False
        self.fail_message: str = "Store unavailable"

    def _check(self) -> None:
        if self.should_fail:
            raise RuntimeError(self.fail_message)

    async def get_by_id(self, group_id: str) -> GroupOrder | None:
        self._check()
        group = self.groups.get(group_id)
        return copy.deepcopy(group) if group else None

    async def get_by_join_code(self, join_code: str) -> GroupOrder | None:
        self._check()
        for group in self.groups.values():
            if group.join_code == join_code.upper():
                return copy.deepcopy(group)
        return None

    async def get_by_invite_token(self, invite_token: str) -> GroupOrder | None:
        self._check()
        for group in self.groups.values():
            if group.invite_token == invite_token:
                return copy.deepcopy(group)
        return None

    async def save(self, group: GroupOrder) -> None:
        self._check()
        self.groups[group.id] = copy.deepcopy(group)
        self.save_count += 1

    async def delete(self, group_id: str) -> None:
        self._check()
        self.groups.pop(group_id, None)
        self.deleted_ids.append(group_id)

    async def query(
        self,
        states: Sequence[GroupState] | None = None,
        expires_before: datetime | None = None,
        user_id: str | None = None,
    ) -> list[GroupOrder]:
        self.query_calls.append(
            {"states": states, "expires_before": expires_before, "user_id": user_id}
        )
        self._check()
        result = []
        for group in self.groups.values():
            if states and group.state not in states:
                continue
            if expires_before is not None and not group.is_expired(expires_before):
                continue
            if user_id is not None and group.member_for_user(user_id) is None:
                continue
            result.append(copy.deepcopy(group))
        result.sort(key=lambda g: g.created_at, reverse=True)
        return result

    def stored(self, group_id: str) -> GroupOrder:
        """Return the stored aggregate directly, for assertions."""
        return self.groups[group_id]

    def set_should_fail(self, should_fail: bool, message: str = "Store unavailable") -> None:
        """Configure the store to fail on the next operation."""
        self.should_fail = should_fail
        self.fail_message = message


class FakeSettledOrderStore(SettledOrderStorePort):
    """In-memory settled order store for testing."""

    def __init__(self) -> None:
        self.orders: dict[str, SettledOrder] = {}
        self.saved_ids: list[str] = []
        self.deleted_ids: list[str] = []
        self.should_fail: bool = False
        self.fail_message: str = "Store unavailable"

    async def get_by_id(self, order_id: str) -> SettledOrder | None:
        if self.should_fail:
            raise RuntimeError(self.fail_message)
        order = self.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def save(self, order: SettledOrder) -> None:
        if self.should_fail:
            raise RuntimeError(self.fail_message)
        self.orders[order.id] = copy.deepcopy(order)
        self.saved_ids.append(order.id)

    async def delete(self, order_id: str) -> None:
        if self.should_fail:
            raise RuntimeError(self.fail_message)
        self.orders.pop(order_id, None)
        self.deleted_ids.append(order_id)

    async def list_for_group(self, group_id: str) -> list[SettledOrder]:
        if self.should_fail:
            raise RuntimeError(self.fail_message)
        orders = [o for o in self.orders.values() if o.group_id == group_id]
        orders.sort(key=lambda o: (o.created_at, o.id))
        return [copy.deepcopy(o) for o in orders]
