"""
Driver directory, driver sessions and location telemetry (Postgres).
Bookkeeping here is never written in the same statement as an order transition.
"""
import secrets
import uuid
from decimal import Decimal
from typing import Any

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from courier_dispatch.errors import Conflict

DRIVER_FLAGS = frozenset({"name", "phone", "active", "verified"})


class DriverDirectory:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def create_driver(self, name: str, email: str, phone: str | None = None,
                            active: bool = True, verified: bool = False) -> dict:
        async with self._pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO drivers (id, name, email, phone, active, verified)
                    VALUES ($1, $2, lower($3), $4, $5, $6)
                    RETURNING *;
                    """,
                    str(uuid.uuid4()), name, email, phone, active, verified,
                )
            except UniqueViolationError:
                raise Conflict(f"A driver with email '{email}' already exists")
        return dict(row)

    async def get_driver(self, driver_id: str) -> dict | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM drivers WHERE id = $1;", driver_id)
        return dict(row) if row else None

    async def get_driver_by_email(self, email: str) -> dict | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM drivers WHERE lower(email) = lower($1) LIMIT 1;",
                email,
            )
        return dict(row) if row else None

    async def update_driver(self, driver_id: str, changes: dict[str, Any]) -> dict | None:
        unknown = set(changes) - DRIVER_FLAGS
        if unknown:
            raise ValueError(f"Unknown driver fields: {sorted(unknown)}")
        if not changes:
            return await self.get_driver(driver_id)
        columns = list(changes)
        assignments = ", ".join(f"{c} = ${i + 2}" for i, c in enumerate(columns))
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE drivers SET {assignments} WHERE id = $1 RETURNING *;",
                driver_id,
                *(changes[c] for c in columns),
            )
        return dict(row) if row else None

    async def next_for_dispatch(self) -> dict | None:
        """Round-robin fairness: least recently assigned active, verified driver first."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM drivers
                WHERE active = TRUE AND verified = TRUE
                ORDER BY last_assigned_at ASC NULLS FIRST, created_at ASC
                LIMIT 1;
                """
            )
        return dict(row) if row else None

    async def stamp_last_assigned(self, driver_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE drivers SET last_assigned_at = NOW() WHERE id = $1;",
                driver_id,
            )

    async def create_session(self, driver_id: str) -> str:
        token = secrets.token_hex(32)
        async with self._pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO driver_sessions (token, driver_id) VALUES ($1, $2);",
                token, driver_id,
            )
        return token

    async def get_session_driver(self, token: str) -> dict | None:
        """Driver bound to a live (unrevoked) session token."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT d.* FROM driver_sessions s
                JOIN drivers d ON d.id = s.driver_id
                WHERE s.token = $1 AND s.revoked_at IS NULL;
                """,
                token,
            )
        return dict(row) if row else None

    async def revoke_session(self, token: str) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE driver_sessions SET revoked_at = NOW() WHERE token = $1 AND revoked_at IS NULL;",
                token,
            )
        return result.endswith(" 1")

    async def record_location(self, driver_id: str, latitude: float, longitude: float,
                              order_id: str | None = None) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO driver_locations (driver_id, order_id, latitude, longitude)
                VALUES ($1, $2, $3, $4);
                """,
                driver_id, order_id, Decimal(str(latitude)), Decimal(str(longitude)),
            )
