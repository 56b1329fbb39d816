"""
Database connection helpers.

This module centralizes how PostgreSQL connections are created for the
`postgres` store backend. `get_async_conn()` is used by the request
path (the app runs on an event loop); `get_conn()` is the blocking
variant for one-off scripts under `scripts/`.

Usage:
    from db import get_async_conn
    async with await get_async_conn() as conn:
        async with conn.cursor() as cur:
            await cur.execute("SELECT 1;")

Note: switching to a connection pool will change these helpers only;
repository code should remain unchanged.
"""

import psycopg
from settings import settings


def get_conn(db_url: str | None = None):
    """Return a new blocking psycopg connection."""

    return psycopg.connect(db_url or settings.db_url, connect_timeout=5)


async def get_async_conn(db_url: str | None = None):
    """Return a new async psycopg connection.

    We add a short `connect_timeout` so webhook deliveries don't hang
    indefinitely if the database is unreachable.
    """

    return await psycopg.AsyncConnection.connect(
        db_url or settings.db_url, connect_timeout=5
    )
