"""
Async Postgres: orders (one row per order, source of truth) + drivers, driver_sessions, driver_locations.
Every contended state change is a single conditional UPDATE ... WHERE <predicate> RETURNING *;
a zero-row result means the predicate no longer matched (lost race or duplicate delivery).
"""
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

import asyncpg


class _Now:
    """Marker for a column assignment of the database clock (NOW())."""

    def __repr__(self) -> str:
        return "NOW"


NOW = _Now()


@dataclass(frozen=True)
class Not:
    """Predicate value: column IS DISTINCT FROM value (Not(None) means IS NOT NULL)."""

    value: Any


ORDER_COLUMNS = frozenset({
    "id", "service_type",
    "customer_name", "customer_email", "customer_phone",
    "pickup_address", "delivery_address", "scheduled_date", "scheduled_time",
    "total_amount", "currency",
    "status", "payment_status", "paid_via", "payment_note",
    "stripe_session_id", "checkout_url", "stripe_payment_intent",
    "assigned_driver_id", "rejection_reason",
    "pickup_photo_url", "pickup_proof_at", "delivery_photo_url", "delivery_proof_at",
    "created_at", "approved_at", "paid_at", "assigned_at", "en_route_at",
    "delivered_at", "rejected_at", "updated_at",
})


async def create_pool(database_url: str) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        database_url,
        min_size=1,
        max_size=10,
        command_timeout=60,
    )


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS drivers (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL,
                phone TEXT,
                active BOOLEAN NOT NULL DEFAULT TRUE,
                verified BOOLEAN NOT NULL DEFAULT FALSE,
                last_assigned_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_drivers_email
            ON drivers (lower(email));
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS driver_sessions (
                token TEXT PRIMARY KEY,
                driver_id TEXT NOT NULL REFERENCES drivers(id),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                revoked_at TIMESTAMPTZ
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                service_type VARCHAR(20) NOT NULL,
                customer_name TEXT,
                customer_email TEXT,
                customer_phone TEXT,
                pickup_address TEXT,
                delivery_address TEXT NOT NULL,
                scheduled_date DATE,
                scheduled_time TIME,
                total_amount NUMERIC(10,2) NOT NULL,
                currency VARCHAR(3) NOT NULL DEFAULT 'usd',
                status VARCHAR(40) NOT NULL,
                payment_status VARCHAR(10) NOT NULL DEFAULT 'unpaid',
                paid_via VARCHAR(10),
                payment_note TEXT,
                stripe_session_id TEXT,
                checkout_url TEXT,
                stripe_payment_intent TEXT,
                assigned_driver_id TEXT REFERENCES drivers(id),
                rejection_reason TEXT,
                pickup_photo_url TEXT,
                pickup_proof_at TIMESTAMPTZ,
                delivery_photo_url TEXT,
                delivery_proof_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                approved_at TIMESTAMPTZ,
                paid_at TIMESTAMPTZ,
                assigned_at TIMESTAMPTZ,
                en_route_at TIMESTAMPTZ,
                delivered_at TIMESTAMPTZ,
                rejected_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                CHECK ((payment_status = 'paid') = (paid_at IS NOT NULL))
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_dispatchable
            ON orders (created_at) WHERE status = 'ready_for_dispatch' AND assigned_driver_id IS NULL;
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_assigned_driver
            ON orders (assigned_driver_id, status);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS driver_locations (
                id BIGSERIAL PRIMARY KEY,
                driver_id TEXT NOT NULL,
                order_id TEXT,
                latitude NUMERIC(10,6) NOT NULL,
                longitude NUMERIC(10,6) NOT NULL,
                recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)


def _param(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def build_conditional_update(
    order_id: str,
    where: Mapping[str, Any],
    values: Mapping[str, Any],
) -> tuple[str, list[Any]]:
    """
    Compile the conditional-update primitive to one UPDATE statement.
    where: column -> value (None = IS NULL, Not(x) = IS DISTINCT FROM x, tuple/list/set = ANY).
    values: column -> value (NOW = database clock). updated_at is always refreshed.
    """
    unknown = (set(where) | set(values)) - ORDER_COLUMNS
    if unknown:
        raise ValueError(f"Unknown order columns: {sorted(unknown)}")

    args: list[Any] = [order_id]
    assignments = []
    for column, value in values.items():
        if value is NOW:
            assignments.append(f"{column} = NOW()")
        else:
            args.append(_param(value))
            assignments.append(f"{column} = ${len(args)}")
    if "updated_at" not in values:
        assignments.append("updated_at = NOW()")

    conditions = ["id = $1"]
    for column, value in where.items():
        if value is None:
            conditions.append(f"{column} IS NULL")
        elif isinstance(value, Not) and value.value is None:
            conditions.append(f"{column} IS NOT NULL")
        elif isinstance(value, Not):
            args.append(_param(value.value))
            conditions.append(f"{column} IS DISTINCT FROM ${len(args)}")
        elif isinstance(value, (tuple, list, set, frozenset)):
            args.append([_param(v) for v in value])
            conditions.append(f"{column} = ANY(${len(args)})")
        else:
            args.append(_param(value))
            conditions.append(f"{column} = ${len(args)}")

    sql = (
        f"UPDATE orders SET {', '.join(assignments)} "
        f"WHERE {' AND '.join(conditions)} RETURNING *;"
    )
    return sql, args


class OrderStore:
    """Order rows in Postgres. Rows are returned as plain dicts."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def insert_order(self, values: Mapping[str, Any]) -> dict:
        data = {"id": str(uuid.uuid4()), **values}
        unknown = set(data) - ORDER_COLUMNS
        if unknown:
            raise ValueError(f"Unknown order columns: {sorted(unknown)}")
        columns = list(data)
        placeholders = []
        args = []
        for column in columns:
            if data[column] is NOW:
                placeholders.append("NOW()")
            else:
                args.append(_param(data[column]))
                placeholders.append(f"${len(args)}")
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"INSERT INTO orders ({', '.join(columns)}) VALUES ({', '.join(placeholders)}) RETURNING *;",
                *args,
            )
        return dict(row)

    async def get_order(self, order_id: str) -> dict | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
        return dict(row) if row else None

    async def update_where(
        self,
        order_id: str,
        where: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> dict | None:
        """Apply values iff the row still matches where. None when zero rows matched."""
        sql, args = build_conditional_update(order_id, where, values)
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(sql, *args)
        return dict(row) if row else None

    async def list_orders(self, statuses: list[str] | None = None, limit: int = 100) -> list[dict]:
        async with self._pool.acquire() as conn:
            if statuses:
                rows = await conn.fetch(
                    "SELECT * FROM orders WHERE status = ANY($1) ORDER BY created_at ASC LIMIT $2;",
                    [_param(s) for s in statuses],
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM orders ORDER BY created_at DESC LIMIT $1;",
                    limit,
                )
        return [dict(r) for r in rows]

    async def list_for_driver(self, driver_id: str) -> list[dict]:
        """Driver's own active orders plus unclaimed dispatchable ones, oldest first."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM orders
                WHERE (assigned_driver_id = $1 AND status IN ('assigned', 'en_route'))
                   OR (assigned_driver_id IS NULL AND status = 'ready_for_dispatch')
                ORDER BY created_at ASC;
                """,
                driver_id,
            )
        return [dict(r) for r in rows]
