"""
Dashboard counters.

Each entity is counted with one ``$group`` aggregation. Every counter is a
conditional sum over the same scan, so the numbers for one entity come from a
single read. Entities are read independently of each other.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from database import Store, store_errors


def _as_utc(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def window_starts(now: Optional[datetime] = None) -> Dict[str, datetime]:
    """
    Start of today, this week (Sunday) and this month in server local time,
    returned as naive UTC to match stored ``createdAt`` values.
    """
    local_now = (now or datetime.now()).astimezone()
    start_of_day = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_week = start_of_day - timedelta(days=(local_now.weekday() + 1) % 7)
    start_of_month = start_of_day.replace(day=1)
    return {
        "today": _as_utc(start_of_day),
        "thisWeek": _as_utc(start_of_week),
        "thisMonth": _as_utc(start_of_month),
    }


def _since(start: datetime) -> Dict[str, Any]:
    return {"$cond": [{"$gte": ["$createdAt", start]}, 1, 0]}


def _equals(field: str, value: str) -> Dict[str, Any]:
    return {"$cond": [{"$eq": ["$" + field, value]}, 1, 0]}


def count_by(store: Store, collection_name: str, counters: Dict[str, Any], match: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
    """Returns ``total`` plus one count per entry in ``counters``."""
    group: Dict[str, Any] = {"_id": None, "total": {"$sum": 1}}
    for key, expression in counters.items():
        group[key] = {"$sum": expression}

    pipeline = [{"$match": match}] if match else []
    pipeline.append({"$group": group})

    rows = list(store.collection(collection_name).aggregate(pipeline))
    row = rows[0] if rows else {}
    return {key: int(row.get(key, 0)) for key in ("total", *counters)}


def dashboard_stats(store: Store, now: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
    starts = window_starts(now)
    windows = {key: _since(start) for key, start in starts.items()}

    with store_errors("Error fetching dashboard statistics"):
        return {
            "quotes": count_by(store, "quote", {
                **windows,
                "pending": _equals("status", "pending"),
                "processing": _equals("status", "processing"),
                "quoted": _equals("status", "quoted"),
            }),
            "calculations": count_by(store, "cbmcalculation", windows),
            "contacts": count_by(store, "contact", {
                "new": _equals("status", "new"),
                "today": windows["today"],
            }),
            "newsletter": count_by(store, "newsletter", {"today": windows["today"]}, match={"status": "active"}),
        }
