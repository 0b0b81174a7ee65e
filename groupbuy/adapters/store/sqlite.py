"""SQLite store adapters.

Implements GroupOrderStorePort and SettledOrderStorePort using SQLite with
aiosqlite for async access. Both stores share one connection pool and one
database file. Each group aggregate is written in a single transaction.
"""

import asyncio
import json
import logging
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from groupbuy.core.models import GroupOrder, GroupState, SettledOrder
from groupbuy.core.ports import GroupOrderStorePort, SettledOrderStorePort

from .codec import (
    dt_to_str,
    group_from_parts,
    group_members_and_items,
    order_from_dict,
    order_to_dict,
)

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS group_orders (
        id TEXT PRIMARY KEY,
        join_code TEXT UNIQUE NOT NULL,
        invite_token TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        store_id TEXT NOT NULL,
        host_user_id TEXT NOT NULL,
        state TEXT NOT NULL,
        delivery_mode TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT,
        join_expires_at TEXT,
        target_member_count INTEGER,
        discount_percent INTEGER NOT NULL DEFAULT 0,
        order_status TEXT,
        document TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_members (
        group_id TEXT NOT NULL REFERENCES group_orders(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        PRIMARY KEY (group_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS settled_orders (
        id TEXT PRIMARY KEY,
        group_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        document TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_group_state_expiry ON group_orders(state, expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_member_user ON group_members(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_settled_group ON settled_orders(group_id, created_at)",
)

_GROUP_COLUMNS = (
    "id, join_code, invite_token, name, store_id, host_user_id, state, "
    "delivery_mode, created_at, expires_at, join_expires_at, "
    "target_member_count, discount_percent, order_status, document"
)


class SQLiteDatabase:
    """Connection pool and lazily created schema for one SQLite file."""

    def __init__(self, db_path: str, pool_size: int = 5):
        """Initialize the pool.

        Args:
            db_path: Path to SQLite database file.
            pool_size: Number of connections to maintain in the pool.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool: list[aiosqlite.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._pool_size = pool_size
        self._schema_initialized = False

    async def get_connection(self) -> aiosqlite.Connection:
        """Get a connection from the pool or create a new one."""
        await self._init_schema()
        return await self._checkout()

    async def return_connection(self, conn: aiosqlite.Connection) -> None:
        """Return a connection to the pool."""
        async with self._pool_lock:
            if len(self._pool) < self._pool_size:
                self._pool.append(conn)
                return
        await conn.close()

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        async with self._pool_lock:
            for conn in self._pool:
                await conn.close()
            self._pool.clear()

    async def _checkout(self) -> aiosqlite.Connection:
        async with self._pool_lock:
            if self._pool:
                return self._pool.pop()
        conn = await aiosqlite.connect(str(self.db_path))
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def _init_schema(self) -> None:
        """Create tables on first use. Subsequent calls are no-ops."""
        if self._schema_initialized:
            return
        async with self._schema_lock:
            if self._schema_initialized:
                return
            conn = await self._checkout()
            try:
                for statement in _SCHEMA:
                    await conn.execute(statement)
                await conn.commit()
                self._schema_initialized = True
            finally:
                await self.return_connection(conn)


class SQLiteGroupOrderStore(GroupOrderStorePort):
    """SQLite-backed group aggregate store."""

    def __init__(self, database: SQLiteDatabase):
        self.database = database

    async def get_by_id(self, group_id: str) -> GroupOrder | None:
        return await self._fetch_one("id = ?", (group_id,))

    async def get_by_join_code(self, join_code: str) -> GroupOrder | None:
        return await self._fetch_one("join_code = ?", (join_code.upper(),))

    async def get_by_invite_token(self, invite_token: str) -> GroupOrder | None:
        return await self._fetch_one("invite_token = ?", (invite_token,))

    async def save(self, group: GroupOrder) -> None:
        """Insert or replace the group row and its membership index atomically."""
        conn = await self.database.get_connection()
        try:
            try:
                await conn.execute(
                    f"""
                    INSERT INTO group_orders ({_GROUP_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        join_code = excluded.join_code,
                        invite_token = excluded.invite_token,
                        name = excluded.name,
                        store_id = excluded.store_id,
                        host_user_id = excluded.host_user_id,
                        state = excluded.state,
                        delivery_mode = excluded.delivery_mode,
                        created_at = excluded.created_at,
                        expires_at = excluded.expires_at,
                        join_expires_at = excluded.join_expires_at,
                        target_member_count = excluded.target_member_count,
                        discount_percent = excluded.discount_percent,
                        order_status = excluded.order_status,
                        document = excluded.document
                    """,
                    (
                        group.id,
                        group.join_code,
                        group.invite_token,
                        group.name,
                        group.store_id,
                        group.host_user_id,
                        group.state.value,
                        group.delivery_mode.value,
                        dt_to_str(group.created_at),
                        dt_to_str(group.expires_at),
                        dt_to_str(group.join_expires_at),
                        group.target_member_count,
                        group.discount_percent,
                        group.order_status.value if group.order_status else None,
                        json.dumps(group_members_and_items(group)),
                    ),
                )
                await conn.execute(
                    "DELETE FROM group_members WHERE group_id = ?", (group.id,)
                )
                await conn.executemany(
                    "INSERT INTO group_members (group_id, user_id) VALUES (?, ?)",
                    [(group.id, m.user_id) for m in group.members],
                )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        finally:
            await self.database.return_connection(conn)

    async def delete(self, group_id: str) -> None:
        conn = await self.database.get_connection()
        try:
            await conn.execute("DELETE FROM group_members WHERE group_id = ?", (group_id,))
            await conn.execute("DELETE FROM group_orders WHERE id = ?", (group_id,))
            await conn.commit()
        finally:
            await self.database.return_connection(conn)

    async def query(
        self,
        states: Sequence[GroupState] | None = None,
        expires_before: datetime | None = None,
        user_id: str | None = None,
    ) -> list[GroupOrder]:
        clauses: list[str] = []
        params: list[Any] = []
        if states:
            clauses.append(f"state IN ({', '.join('?' for _ in states)})")
            params.extend(s.value for s in states)
        if expires_before is not None:
            clauses.append("expires_at IS NOT NULL AND expires_at <= ?")
            params.append(dt_to_str(expires_before))
        if user_id is not None:
            clauses.append(
                "id IN (SELECT group_id FROM group_members WHERE user_id = ?)"
            )
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = await self.database.get_connection()
        try:
            cursor = await conn.execute(
                f"SELECT {_GROUP_COLUMNS} FROM group_orders {where} "
                f"ORDER BY created_at DESC",
                params,
            )
            rows = await cursor.fetchall()
            return [self._row_to_group(row) for row in rows]
        finally:
            await self.database.return_connection(conn)

    async def _fetch_one(self, where: str, params: tuple[Any, ...]) -> GroupOrder | None:
        conn = await self.database.get_connection()
        try:
            cursor = await conn.execute(
                f"SELECT {_GROUP_COLUMNS} FROM group_orders WHERE {where}", params
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            return self._row_to_group(row)
        finally:
            await self.database.return_connection(conn)

    @staticmethod
    def _row_to_group(row: aiosqlite.Row) -> GroupOrder:
        """Convert a database row to a GroupOrder.

        Raises:
            ValueError: If the row is malformed.
        """
        columns = dict(row)
        try:
            document = json.loads(columns.pop("document"))
            return group_from_parts(columns, document)
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Failed to parse group row {columns.get('id')}: {e}")
            raise ValueError(f"Row parsing failed: {e}") from e


class SQLiteSettledOrderStore(SettledOrderStorePort):
    """SQLite-backed settled order store."""

    def __init__(self, database: SQLiteDatabase):
        self.database = database

    async def get_by_id(self, order_id: str) -> SettledOrder | None:
        conn = await self.database.get_connection()
        try:
            cursor = await conn.execute(
                "SELECT document FROM settled_orders WHERE id = ?", (order_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            return order_from_dict(json.loads(row["document"]))
        finally:
            await self.database.return_connection(conn)

    async def save(self, order: SettledOrder) -> None:
        conn = await self.database.get_connection()
        try:
            await conn.execute(
                """
                INSERT OR REPLACE INTO settled_orders
                (id, group_id, user_id, status, created_at, document)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    order.id,
                    order.group_id,
                    order.user_id,
                    order.status.value,
                    dt_to_str(order.created_at),
                    json.dumps(order_to_dict(order)),
                ),
            )
            await conn.commit()
        finally:
            await self.database.return_connection(conn)

    async def delete(self, order_id: str) -> None:
        conn = await self.database.get_connection()
        try:
            await conn.execute("DELETE FROM settled_orders WHERE id = ?", (order_id,))
            await conn.commit()
        finally:
            await self.database.return_connection(conn)

    async def list_for_group(self, group_id: str) -> list[SettledOrder]:
        conn = await self.database.get_connection()
        try:
            cursor = await conn.execute(
                """
                SELECT document FROM settled_orders
                WHERE group_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (group_id,),
            )
            rows = await cursor.fetchall()
            return [order_from_dict(json.loads(row["document"])) for row in rows]
        finally:
            await self.database.return_connection(conn)
