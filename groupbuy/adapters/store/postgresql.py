"""PostgreSQL store adapters.

Implements GroupOrderStorePort and SettledOrderStorePort using PostgreSQL
with asyncpg for async access. Members, items and order lines are stored
as JSONB documents; each group aggregate is written in one transaction.
"""

import asyncio
import json
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

import asyncpg

from groupbuy.core.models import GroupOrder, GroupState, SettledOrder
from groupbuy.core.ports import GroupOrderStorePort, SettledOrderStorePort

from .codec import (
    group_from_parts,
    group_members_and_items,
    order_from_dict,
    order_to_dict,
    to_utc,
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
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ,
        join_expires_at TIMESTAMPTZ,
        target_member_count INTEGER,
        discount_percent INTEGER NOT NULL DEFAULT 0,
        order_status TEXT,
        document JSONB NOT NULL
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
        created_at TIMESTAMPTZ NOT NULL,
        document JSONB NOT NULL
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


class PostgreSQLDatabase:
    """asyncpg connection pool and lazily created schema."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "groupbuy",
        user: str = "groupbuy",
        password: str = "",
        pool_size: int = 10,
    ):
        """Initialize PostgreSQL connection settings.

        Args:
            host: PostgreSQL server hostname.
            port: PostgreSQL server port.
            database: Database name.
            user: Database user.
            password: Database password.
            pool_size: Maximum number of pooled connections.
        """
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self._pool: asyncpg.Pool | None = None
        self._pool_size = pool_size
        self._schema_lock = asyncio.Lock()
        self._schema_initialized = False

    async def pool(self) -> asyncpg.Pool:
        """Return the pool, creating it and the schema on first use."""
        if self._schema_initialized and self._pool is not None:
            return self._pool
        async with self._schema_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    host=self.host,
                    port=self.port,
                    database=self.database,
                    user=self.user,
                    password=self.password,
                    min_size=1,
                    max_size=self._pool_size,
                )
            if not self._schema_initialized:
                async with self._pool.acquire() as conn:
                    for statement in _SCHEMA:
                        await conn.execute(statement)
                self._schema_initialized = True
        return self._pool

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._schema_initialized = False


class PostgreSQLGroupOrderStore(GroupOrderStorePort):
    """PostgreSQL-backed group aggregate store."""

    def __init__(self, database: PostgreSQLDatabase):
        self.database = database

    async def get_by_id(self, group_id: str) -> GroupOrder | None:
        return await self._fetch_one("id = $1", group_id)

    async def get_by_join_code(self, join_code: str) -> GroupOrder | None:
        return await self._fetch_one("join_code = $1", join_code.upper())

    async def get_by_invite_token(self, invite_token: str) -> GroupOrder | None:
        return await self._fetch_one("invite_token = $1", invite_token)

    async def save(self, group: GroupOrder) -> None:
        pool = await self.database.pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO group_orders ({_GROUP_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15::jsonb)
                    ON CONFLICT (id) DO UPDATE SET
                        join_code = EXCLUDED.join_code,
                        invite_token = EXCLUDED.invite_token,
                        name = EXCLUDED.name,
                        store_id = EXCLUDED.store_id,
                        host_user_id = EXCLUDED.host_user_id,
                        state = EXCLUDED.state,
                        delivery_mode = EXCLUDED.delivery_mode,
                        created_at = EXCLUDED.created_at,
                        expires_at = EXCLUDED.expires_at,
                        join_expires_at = EXCLUDED.join_expires_at,
                        target_member_count = EXCLUDED.target_member_count,
                        discount_percent = EXCLUDED.discount_percent,
                        order_status = EXCLUDED.order_status,
                        document = EXCLUDED.document
                    """,
                    group.id,
                    group.join_code,
                    group.invite_token,
                    group.name,
                    group.store_id,
                    group.host_user_id,
                    group.state.value,
                    group.delivery_mode.value,
                    to_utc(group.created_at),
                    to_utc(group.expires_at),
                    to_utc(group.join_expires_at),
                    group.target_member_count,
                    group.discount_percent,
                    group.order_status.value if group.order_status else None,
                    json.dumps(group_members_and_items(group)),
                )
                await conn.execute("DELETE FROM group_members WHERE group_id = $1", group.id)
                if group.members:
                    await conn.executemany(
                        "INSERT INTO group_members (group_id, user_id) VALUES ($1, $2)",
                        [(group.id, m.user_id) for m in group.members],
                    )

    async def delete(self, group_id: str) -> None:
        pool = await self.database.pool()
        async with pool.acquire() as conn:
            await conn.execute("DELETE FROM group_orders WHERE id = $1", group_id)

    async def query(
        self,
        states: Sequence[GroupState] | None = None,
        expires_before: datetime | None = None,
        user_id: str | None = None,
    ) -> list[GroupOrder]:
        clauses: list[str] = []
        params: list[Any] = []
        if states:
            params.append([s.value for s in states])
            clauses.append(f"state = ANY(${len(params)}::text[])")
        if expires_before is not None:
            params.append(to_utc(expires_before))
            clauses.append(f"expires_at IS NOT NULL AND expires_at <= ${len(params)}")
        if user_id is not None:
            params.append(user_id)
            clauses.append(
                f"id IN (SELECT group_id FROM group_members WHERE user_id = ${len(params)})"
            )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        pool = await self.database.pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_GROUP_COLUMNS} FROM group_orders {where} ORDER BY created_at DESC",
                *params,
            )
            return [self._row_to_group(row) for row in rows]

    async def _fetch_one(self, where: str, value: str) -> GroupOrder | None:
        pool = await self.database.pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_GROUP_COLUMNS} FROM group_orders WHERE {where}", value
            )
            if row is None:
                return None
            return self._row_to_group(row)

    @staticmethod
    def _row_to_group(row: asyncpg.Record) -> GroupOrder:
        columns = dict(row)
        document = columns.pop("document")
        try:
            if isinstance(document, str):
                document = json.loads(document)
            return group_from_parts(columns, document)
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Failed to parse group row {columns.get('id')}: {e}")
            raise ValueError(f"Row parsing failed: {e}") from e


class PostgreSQLSettledOrderStore(SettledOrderStorePort):
    """PostgreSQL-backed settled order store."""

    def __init__(self, database: PostgreSQLDatabase):
        self.database = database

    async def get_by_id(self, order_id: str) -> SettledOrder | None:
        pool = await self.database.pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT document FROM settled_orders WHERE id = $1", order_id
            )
            if row is None:
                return None
            return self._row_to_order(row)

    async def save(self, order: SettledOrder) -> None:
        pool = await self.database.pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO settled_orders (id, group_id, user_id, status, created_at, document)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    document = EXCLUDED.document
                """,
                order.id,
                order.group_id,
                order.user_id,
                order.status.value,
                to_utc(order.created_at),
                json.dumps(order_to_dict(order)),
            )

    async def delete(self, order_id: str) -> None:
        pool = await self.database.pool()
        async with pool.acquire() as conn:
            await conn.execute("DELETE FROM settled_orders WHERE id = $1", order_id)

    async def list_for_group(self, group_id: str) -> list[SettledOrder]:
        pool = await self.database.pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT document FROM settled_orders
                WHERE group_id = $1
                ORDER BY created_at ASC, id ASC
                """,
                group_id,
            )
            return [self._row_to_order(row) for row in rows]

    @staticmethod
    def _row_to_order(row: asyncpg.Record) -> SettledOrder:
        document = row["document"]
        if isinstance(document, str):
            document = json.loads(document)
        return order_from_dict(document)
