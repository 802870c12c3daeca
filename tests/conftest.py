import copy
import datetime

import pytest

from db import COLLECTIONS, DataAccessFailure

UTC = datetime.timezone.utc
NOW = datetime.datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def _matches(row, filters):
    for key, value in (filters or {}).items():
        column, _, op = key.partition("__")
        current = row.get(column)
        if op == "isnull":
            if (current is None) != bool(value):
                return False
        elif op == "gte":
            if current is None or current < value:
                return False
        elif op == "lte":
            if current is None or current > value:
                return False
        elif current != value:
            return False
    return True


class MemoryStore:
    """In-memory stand-in for db.RecordStore with the same call surface."""

    def __init__(self, **collections):
        self.rows = {name: [] for name in COLLECTIONS}
        for name, rows in collections.items():
            self.rows[name] = [dict(r) for r in rows]
        self._next_id = 1

    async def select(self, collection, filters=None, order_by=None, descending=False,
                     limit=None, columns=None):
        rows = [copy.deepcopy(r) for r in self.rows[collection] if _matches(r, filters)]
        if order_by:
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            present.sort(key=lambda r: r[order_by], reverse=descending)
            rows = present + missing
        if limit is not None:
            rows = rows[:limit]
        if columns:
            rows = [{c: r.get(c) for c in columns} for r in rows]
        return rows

    async def update(self, collection, filters, patch):
        hits = [r for r in self.rows[collection] if _matches(r, filters)]
        for r in hits:
            r.update(patch)
        return len(hits)

    async def insert(self, collection, record):
        row = dict(record)
        if collection == "audit_log":
            row.setdefault("id", self._next_id)
            self._next_id += 1
        self.rows[collection].append(row)
        return dict(row)

    async def upsert(self, collection, record):
        key = COLLECTIONS[collection]["key"]
        for r in self.rows[collection]:
            if r.get(key) == record[key]:
                r.update(record)
                return dict(r)
        return await self.insert(collection, record)


class FailingStore(MemoryStore):
    """MemoryStore whose listed methods raise DataAccessFailure."""

    def __init__(self, fail=(), **collections):
        super().__init__(**collections)
        self.fail = set(fail)

    async def select(self, *args, **kwargs):
        if "select" in self.fail:
            raise DataAccessFailure("select refused")
        return await super().select(*args, **kwargs)

    async def update(self, *args, **kwargs):
        if "update" in self.fail:
            raise DataAccessFailure("update refused")
        return await super().update(*args, **kwargs)

    async def insert(self, *args, **kwargs):
        if "insert" in self.fail:
            raise DataAccessFailure("insert refused")
        return await super().insert(*args, **kwargs)

    async def upsert(self, *args, **kwargs):
        if "upsert" in self.fail:
            raise DataAccessFailure("upsert refused")
        return await super().upsert(*args, **kwargs)


def make_request(discord_id, verified=None, notes=None, verified_at=None,
                 submitted_at=None, student_number="H00123456"):
    return {
        "discord_id": discord_id,
        "email": f"{discord_id}@student.example.ac.uk",
        "student_number": student_number,
        "verified": verified,
        "submitted_at": submitted_at or NOW - datetime.timedelta(days=2),
        "verified_at": verified_at,
        "verified_by": None,
        "notes": notes,
    }


@pytest.fixture
def requests_fixture():
    return [
        make_request("100", submitted_at=NOW - datetime.timedelta(hours=1)),
        make_request("200", verified=True, notes="Approved via dashboard",
                     verified_at=NOW - datetime.timedelta(days=1)),
        make_request("300", verified=False, notes="Rejected via dashboard",
                     verified_at=NOW - datetime.timedelta(days=3)),
        make_request("400", verified=False, notes="waiting on email reply"),
    ]


@pytest.fixture
def store(requests_fixture):
    return MemoryStore(verification_requests=requests_fixture)
