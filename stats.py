"""
Student Verification Dashboard: Statistics
Status counts and the daily verification trend shown on the dashboard.
"""

import datetime
from collections import Counter
from typing import Dict, Iterable, List, Optional, Union

from verification import REQUESTS, VerificationStatus, derive_status

TREND_DAYS = 7


def as_datetime(value: Union[str, datetime.datetime, None]) -> Optional[datetime.datetime]:
    if value is None or value == "":
        return None
    dt = datetime.datetime.fromisoformat(value.replace("Z", "+00:00")) if isinstance(value, str) else value
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


def count_statuses(requests: Iterable[Dict]) -> Dict[str, int]:
    """total / verified / rejected / pending, with pending = total - verified - rejected."""
    counts = Counter(derive_status(r) for r in requests)
    total = sum(counts.values())
    verified = counts[VerificationStatus.VERIFIED]
    rejected = counts[VerificationStatus.REJECTED]
    return {"total": total, "verified": verified, "rejected": rejected,
            "pending": total - verified - rejected}


def window_start(now: Optional[datetime.datetime] = None, days: int = TREND_DAYS) -> datetime.datetime:
    now = as_datetime(now) or datetime.datetime.now(datetime.timezone.utc)
    return now - datetime.timedelta(days=days)


def verification_trend(requests: Iterable[Dict], now: Optional[datetime.datetime] = None,
                       days: int = TREND_DAYS, tz: Optional[datetime.tzinfo] = None) -> List[Dict]:
    """Verifications per calendar day over the trailing ``days`` days.

    Only requests whose ``verified_at`` is set and no older than ``now - days``
    count. Days are the local date in ``tz`` (server local time when omitted)
    and come out in order of first appearance, not sorted.
    """
    since = window_start(now, days)
    buckets: Dict[str, int] = {}
    for r in requests:
        at = as_datetime(r.get("verified_at"))
        if at is None or at < since:
            continue
        day = at.astimezone(tz).date().isoformat()
        buckets[day] = buckets.get(day, 0) + 1
    return [{"date": d, "count": c} for d, c in buckets.items()]


async def get_dashboard_stats(store, now: Optional[datetime.datetime] = None) -> Dict:
    """Counts over every request plus the trend; a failed read raises, nothing partial is returned."""
    requests = await store.select(REQUESTS, columns=["verified", "verified_at", "notes"])
    recent = await store.select(REQUESTS, columns=["verified_at"],
                                filters={"verified_at__isnull": False,
                                         "verified_at__gte": window_start(now)})
    trend = verification_trend(recent, now=now)
    peak = max((d["count"] for d in trend), default=0)
    return {"counts": count_statuses(requests), "trend": trend, "trend_peak": peak}
