"""Tests for the SQLite store adapters."""

import dataclasses
from datetime import timedelta
from pathlib import Path

import pytest

from groupbuy.adapters.store.sqlite import (
    SQLiteDatabase,
    SQLiteGroupOrderStore,
    SQLiteSettledOrderStore,
)
from groupbuy.core.models import GroupOrder, GroupState, OrderStatus, SettledOrder
from groupbuy.tests.fakes import Harness, build_harness
from groupbuy.tests.fakes.harness import HOST

# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
async def database(tmp_path: Path):
    db = SQLiteDatabase(str(tmp_path / "groupbuy.db"))
    yield db
    await db.close_pool()


@pytest.fixture
def group_store(database: SQLiteDatabase) -> SQLiteGroupOrderStore:
    return SQLiteGroupOrderStore(database)


@pytest.fixture
def order_store(database: SQLiteDatabase) -> SQLiteSettledOrderStore:
    return SQLiteSettledOrderStore(database)


@pytest.fixture
def harness() -> Harness:
    return build_harness()


async def _completed_group(harness: Harness) -> tuple[GroupOrder, SettledOrder]:
    """A group checked out by the host, plus its settled order."""
    group = await harness.locked_group(["bob", "carol"])
    await harness.service.checkout_group(group.id, HOST, "cod", address_id="addr-host")
    stored = harness.groups.stored(group.id)
    order = harness.orders.orders[stored.settled_order_ids[0]]
    return stored, order


# ============================================================================
# Group aggregates
# ============================================================================


class TestSQLiteGroupOrderStore:
    async def test_save_and_load_round_trip(
        self, harness: Harness, group_store: SQLiteGroupOrderStore
    ) -> None:
        group, _ = await _completed_group(harness)

        await group_store.save(group)
        loaded = await group_store.get_by_id(group.id)

        assert loaded == group
        assert loaded.state == GroupState.COMPLETED
        assert loaded.items[0].price == group.items[0].price

    async def test_lookup_by_join_code_and_invite(
        self, harness: Harness, group_store: SQLiteGroupOrderStore
    ) -> None:
        group = await harness.open_group(["bob"])
        await group_store.save(harness.groups.stored(group.id))

        by_code = await group_store.get_by_join_code(group.join_code.lower())
        by_token = await group_store.get_by_invite_token(group.invite_token)

        assert by_code is not None and by_code.id == group.id
        assert by_token is not None and by_token.id == group.id
        assert await group_store.get_by_join_code("ZZZZZZ") is None

    async def test_save_replaces_membership(
        self, harness: Harness, group_store: SQLiteGroupOrderStore
    ) -> None:
        group = await harness.open_group(["bob", "carol"])
        await group_store.save(harness.groups.stored(group.id))

        await harness.service.leave(group.id, "carol")
        await group_store.save(harness.groups.stored(group.id))

        assert [g.id for g in await group_store.query(user_id="bob")] == [group.id]
        assert await group_store.query(user_id="carol") == []

    async def test_query_by_state_and_deadline(
        self, harness: Harness, group_store: SQLiteGroupOrderStore
    ) -> None:
        soon = harness.clock() + timedelta(hours=1)
        later = harness.clock() + timedelta(hours=5)
        first = await harness.open_group(["bob"], expires_at=soon)
        harness.clock.advance(timedelta(minutes=1))
        second = await harness.open_group(["carol"], expires_at=later)
        for group_id in (first.id, second.id):
            await group_store.save(harness.groups.stored(group_id))

        everything = await group_store.query(states=[GroupState.OPEN])
        due = await group_store.query(
            states=[GroupState.OPEN, GroupState.LOCKED],
            expires_before=soon + timedelta(minutes=1),
        )

        assert [g.id for g in everything] == [second.id, first.id]
        assert [g.id for g in due] == [first.id]
        assert await group_store.query(states=[GroupState.CANCELLED]) == []

    async def test_delete(
        self, harness: Harness, group_store: SQLiteGroupOrderStore
    ) -> None:
        group = await harness.open_group(["bob"])
        await group_store.save(harness.groups.stored(group.id))

        await group_store.delete(group.id)

        assert await group_store.get_by_id(group.id) is None
        assert await group_store.query(user_id="bob") == []

    async def test_malformed_row_raises(
        self, database: SQLiteDatabase, group_store: SQLiteGroupOrderStore
    ) -> None:
        conn = await database.get_connection()
        try:
            await conn.execute(
                """
                INSERT INTO group_orders
                (id, join_code, invite_token, name, store_id, host_user_id, state,
                 delivery_mode, created_at, document)
                VALUES ('g-bad', 'BADBAD', 'tok', 'Broken', 's1', 'host', 'open',
                        'host_address', '2025-03-01T09:00:00+00:00', 'not json')
                """
            )
            await conn.commit()
        finally:
            await database.return_connection(conn)

        with pytest.raises(ValueError, match="Row parsing failed"):
            await group_store.get_by_id("g-bad")


# ============================================================================
# Settled orders
# ============================================================================


class TestSQLiteSettledOrderStore:
    async def test_save_and_load_round_trip(
        self, harness: Harness, order_store: SQLiteSettledOrderStore
    ) -> None:
        _, order = await _completed_group(harness)

        await order_store.save(order)

        assert await order_store.get_by_id(order.id) == order
        assert await order_store.get_by_id("missing") is None

    async def test_list_for_group_oldest_first(
        self, harness: Harness, order_store: SQLiteSettledOrderStore
    ) -> None:
        _, order = await _completed_group(harness)
        newer = dataclasses.replace(
            order, id="order-z", created_at=order.created_at + timedelta(minutes=5)
        )
        await order_store.save(newer)
        await order_store.save(order)

        listed = await order_store.list_for_group(order.group_id)

        assert [o.id for o in listed] == [order.id, "order-z"]

    async def test_save_overwrites_status(
        self, harness: Harness, order_store: SQLiteSettledOrderStore
    ) -> None:
        _, order = await _completed_group(harness)
        await order_store.save(order)

        await order_store.save(dataclasses.replace(order, status=OrderStatus.CANCELLED))

        loaded = await order_store.get_by_id(order.id)
        assert loaded.status == OrderStatus.CANCELLED

    async def test_delete(
        self, harness: Harness, order_store: SQLiteSettledOrderStore
    ) -> None:
        _, order = await _completed_group(harness)
        await order_store.save(order)

        await order_store.delete(order.id)

        assert await order_store.list_for_group(order.group_id) == []
