from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

# Fixed key for the maintenance leader lock (Postgres advisory locks take a bigint)
LEADER_LOCK_KEY = 84728472

async def try_advisory_lock(conn: AsyncConnection, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired (or already held by this connection).

    The lock lives as long as the connection, so callers keep one dedicated
    connection open. Other databases have no advisory locks; there the
    caller is always leader.
    """
    if conn.dialect.name != "postgresql":
        return True

    result = await conn.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    acquired = result.scalar() is True
    # End the implicit transaction; the session-level lock survives it
    await conn.commit()
    return acquired
