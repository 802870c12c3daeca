import datetime

import pytest

import stats
from db import DataAccessFailure
from conftest import NOW, UTC, FailingStore, MemoryStore, make_request

DAY = datetime.timedelta(days=1)


def test_counts(requests_fixture):
    assert stats.count_statuses(requests_fixture) == {
        "total": 4, "verified": 1, "rejected": 1, "pending": 2,
    }


def test_counts_empty():
    assert stats.count_statuses([]) == {"total": 0, "verified": 0, "rejected": 0, "pending": 0}


@pytest.mark.parametrize("mix", [
    [(True, None), (True, "Rejected"), (False, "Rejected"), (None, None)],
    [(False, None), (False, "x"), (None, "Rejected via dashboard")],
    [(True, "ok")] * 5,
])
def test_pending_by_subtraction_matches_direct_count(mix):
    requests = [{"verified": v, "notes": n} for v, n in mix]
    counts = stats.count_statuses(requests)
    direct = sum(1 for r in requests if stats.derive_status(r).value == "pending")
    assert counts["pending"] == direct
    assert counts["pending"] + counts["verified"] + counts["rejected"] == counts["total"]


def test_trend_groups_days_inside_window():
    requests = [
        {"verified_at": NOW - DAY},
        {"verified_at": NOW - DAY - datetime.timedelta(hours=2)},
        {"verified_at": NOW - 3 * DAY},
        {"verified_at": NOW - 10 * DAY},
        {"verified_at": None},
    ]
    trend = stats.verification_trend(requests, now=NOW, tz=UTC)
    assert trend == [
        {"date": "2026-10-17", "count": 2},
        {"date": "2026-10-15", "count": 1},
    ]


def test_trend_keeps_first_seen_order():
    requests = [{"verified_at": NOW - 3 * DAY}, {"verified_at": NOW - DAY}, {"verified_at": NOW - 3 * DAY}]
    trend = stats.verification_trend(requests, now=NOW, tz=UTC)
    assert [d["date"] for d in trend] == ["2026-10-15", "2026-10-17"]
    assert [d["count"] for d in trend] == [2, 1]


def test_trend_window_boundary_is_inclusive():
    requests = [{"verified_at": NOW - 7 * DAY}, {"verified_at": NOW - 7 * DAY - datetime.timedelta(seconds=1)}]
    trend = stats.verification_trend(requests, now=NOW, tz=UTC)
    assert trend == [{"date": "2026-10-11", "count": 1}]


def test_trend_uses_requested_timezone():
    late = datetime.datetime(2026, 10, 17, 23, 30, tzinfo=UTC)
    plus_two = datetime.timezone(datetime.timedelta(hours=2))
    trend = stats.verification_trend([{"verified_at": late}], now=NOW, tz=plus_two)
    assert trend == [{"date": "2026-10-18", "count": 1}]


def test_trend_accepts_iso_strings_and_naive_datetimes():
    requests = [
        {"verified_at": "2026-10-16T09:00:00Z"},
        {"verified_at": datetime.datetime(2026, 10, 16, 10, 0)},
    ]
    assert stats.verification_trend(requests, now=NOW, tz=UTC) == [{"date": "2026-10-16", "count": 2}]


@pytest.mark.asyncio
async def test_dashboard_stats(store):
    data = await stats.get_dashboard_stats(store, now=NOW)
    assert data["counts"]["total"] == 4
    assert sum(d["count"] for d in data["trend"]) == 2
    assert data["trend_peak"] == 1


@pytest.mark.asyncio
async def test_dashboard_stats_excludes_old_verifications():
    store = MemoryStore(verification_requests=[
        make_request("1", verified=True, verified_at=NOW - 10 * DAY),
    ])
    data = await stats.get_dashboard_stats(store, now=NOW)
    assert data["counts"]["verified"] == 1
    assert data["trend"] == []
    assert data["trend_peak"] == 0


@pytest.mark.asyncio
async def test_dashboard_stats_read_failure_has_no_partial_result():
    with pytest.raises(DataAccessFailure):
        await stats.get_dashboard_stats(FailingStore(fail={"select"}), now=NOW)
