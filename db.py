"""
Student Verification Dashboard: Record Store
Generic select / update / insert / upsert over the hosted Postgres database.
Collections: verification_requests, audit_log, bot_config.
"""

import os, asyncio, logging, asyncpg
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class DataAccessFailure(RuntimeError):
    """The store is unreachable or rejected a query."""


COLLECTIONS = {
    "verification_requests": {
        "key": "discord_id",
        "columns": ("discord_id", "email", "student_number", "verified", "submitted_at",
                    "verified_at", "verified_by", "notes"),
    },
    "audit_log": {
        "key": "id",
        "columns": ("id", "action", "student_id", "student_number", "performed_by", "performed_at"),
    },
    "bot_config": {
        "key": "guild_id",
        "columns": ("guild_id", "verify_channel_id", "verifier_role_id", "student_role_id", "updated_at"),
    },
}

SCHEMA = (
    '''CREATE TABLE IF NOT EXISTS verification_requests (
        discord_id TEXT PRIMARY KEY, email TEXT NOT NULL, student_number TEXT NOT NULL,
        verified BOOLEAN, submitted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        verified_at TIMESTAMPTZ, verified_by TEXT, notes TEXT)''',
    '''CREATE TABLE IF NOT EXISTS audit_log (
        id SERIAL PRIMARY KEY, action TEXT NOT NULL, student_id TEXT NOT NULL,
        student_number TEXT, performed_by TEXT NOT NULL,
        performed_at TIMESTAMPTZ NOT NULL DEFAULT NOW())''',
    '''CREATE TABLE IF NOT EXISTS bot_config (
        guild_id TEXT PRIMARY KEY, verify_channel_id TEXT, verifier_role_id TEXT,
        student_role_id TEXT, updated_at TIMESTAMPTZ)''',
)

FILTER_OPS = {"eq": "=", "gte": ">=", "lte": "<="}

# Errors that mean "the store is unreachable or rejected the query".
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def _columns(collection: str) -> Tuple[str, ...]:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection}")
    return COLLECTIONS[collection]["columns"]


def _check(collection: str, names) -> None:
    allowed = _columns(collection)
    for name in names:
        if name not in allowed:
            raise ValueError(f"Unknown column {name!r} in {collection}")


def build_where(collection: str, filters: Optional[Dict[str, Any]], start: int = 1) -> Tuple[str, List]:
    """Turn ``{"col": v, "col__gte": v, "col__isnull": bool}`` into a WHERE clause.

    Returns the clause (empty when there are no filters) and its positional args,
    numbered from ``start``.
    """
    if not filters:
        return "", []
    parts, args = [], []
    for key, value in filters.items():
        column, _, op = key.partition("__")
        op = op or "eq"
        _check(collection, [column])
        if op == "isnull":
            parts.append(f"{column} IS NULL" if value else f"{column} IS NOT NULL")
            continue
        if op not in FILTER_OPS:
            raise ValueError(f"Unknown filter operator: {op}")
        args.append(value)
        parts.append(f"{column} {FILTER_OPS[op]} ${start + len(args) - 1}")
    return " WHERE " + " AND ".join(parts), args


class RecordStore:
    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        url = os.getenv("DATABASE_URL")
        if not url:
            raise RuntimeError("DATABASE_URL not set")
        self.pool = await asyncpg.create_pool(
            url, min_size=1, max_size=5, command_timeout=15,
            server_settings={"application_name": "VerificationDashboard"}
        )
        async with self.pool.acquire() as conn:
            for ddl in SCHEMA:
                await conn.execute(ddl)
        logger.info("[DB] Connected, schema ready")

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def _run(self, method: str, query: str, *args):
        if self.pool is None:
            raise DataAccessFailure("Record store is not connected")
        try:
            async with self.pool.acquire() as conn:
                return await getattr(conn, method)(query, *args)
        except DRIVER_ERRORS as e:
            logger.warning(f"[DB] {method} failed: {e}")
            raise DataAccessFailure(str(e)) from e

    # ── Reads ──────────────────────────────────────
    async def select(self, collection: str, filters: Optional[Dict[str, Any]] = None,
                     order_by: Optional[str] = None, descending: bool = False,
                     limit: Optional[int] = None, columns: Optional[List[str]] = None) -> List[Dict]:
        cols = columns or list(_columns(collection))
        _check(collection, cols)
        where, args = build_where(collection, filters)
        query = f"SELECT {', '.join(cols)} FROM {collection}{where}"
        if order_by:
            _check(collection, [order_by])
            query += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            args.append(int(limit))
            query += f" LIMIT ${len(args)}"
        rows = await self._run("fetch", query, *args)
        return [dict(r) for r in rows]

    # ── Writes ─────────────────────────────────────
    async def update(self, collection: str, filters: Dict[str, Any], patch: Dict[str, Any]) -> int:
        if not filters:
            raise ValueError("update() needs at least one filter")
        _check(collection, patch)
        sets = ", ".join(f"{col} = ${i}" for i, col in enumerate(patch, start=1))
        where, args = build_where(collection, filters, start=len(patch) + 1)
        status = await self._run("execute", f"UPDATE {collection} SET {sets}{where}",
                                 *patch.values(), *args)
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return int(status.split()[-1]) if status else 0

    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict:
        _check(collection, record)
        cols = list(record)
        marks = ", ".join(f"${i}" for i in range(1, len(cols) + 1))
        row = await self._run(
            "fetchrow",
            f"INSERT INTO {collection} ({', '.join(cols)}) VALUES ({marks}) RETURNING *",
            *record.values())
        return dict(row) if row else {}

    async def upsert(self, collection: str, record: Dict[str, Any]) -> Dict:
        key = COLLECTIONS.get(collection, {}).get("key")
        _check(collection, record)
        if key not in record:
            raise ValueError(f"upsert into {collection} needs its key column {key!r}")
        cols = list(record)
        marks = ", ".join(f"${i}" for i in range(1, len(cols) + 1))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in cols if c != key) or f"{key} = EXCLUDED.{key}"
        row = await self._run(
            "fetchrow",
            f"INSERT INTO {collection} ({', '.join(cols)}) VALUES ({marks}) "
            f"ON CONFLICT ({key}) DO UPDATE SET {updates} RETURNING *",
            *record.values())
        return dict(row) if row else {}


db = RecordStore()
