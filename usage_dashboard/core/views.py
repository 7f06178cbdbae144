"""
Read-side views over a finalized usage report.

Filtering, re-sorting and summary statistics for the aggregate rows. These
never recompute usage; they only slice what the aggregation produced.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from usage_dashboard.storage.models import parse_timestamp


class SortOrder(Enum):
    """Direction of a view sort."""
    ASC = "asc"
    DESC = "desc"


MODEL_SORT_FIELDS = ("totalTokens", "cost", "messages", "sessions", "model")
PROJECT_SORT_FIELDS = ("lastActivity", "totalCost", "totalTokens", "name", "messageCount")

ACTIVE_PROJECT_WINDOW = timedelta(days=30)


def _row_cost(row: Dict[str, Any], key: str = "cost") -> float:
    return float(row.get(key) or 0)


def filter_by_date_range(
    rows: List[Dict[str, Any]],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    key: str = "date",
) -> List[Dict[str, Any]]:
    """Keep rows whose ``key`` lies within the inclusive date range."""
    return [
        row for row in rows
        if (not start_date or row[key] >= start_date) and (not end_date or row[key] <= end_date)
    ]


def filter_months_by_year(rows: List[Dict[str, Any]], year: Optional[int]) -> List[Dict[str, Any]]:
    if year is None:
        return list(rows)
    prefix = f"{year:04d}-"
    return [row for row in rows if row["month"].startswith(prefix)]


def _sort_value(row: Dict[str, Any], sort_by: str):
    if sort_by in ("cost", "totalCost"):
        return _row_cost(row, sort_by)
    if sort_by in ("model", "name"):
        return row[sort_by].lower()
    if sort_by == "lastActivity":
        parsed = parse_timestamp(row.get("lastActivity"))
        return parsed or datetime.min.replace(tzinfo=timezone.utc)
    return row[sort_by]


def sort_rows(
    rows: List[Dict[str, Any]],
    sort_by: str,
    order: SortOrder = SortOrder.DESC,
    allowed: tuple = MODEL_SORT_FIELDS,
) -> List[Dict[str, Any]]:
    """Sort rows by one field.

    Raises:
        ValueError: If the field is not sortable for this view
    """
    if sort_by not in allowed:
        raise ValueError(f"sort_by must be one of: {', '.join(allowed)}")
    return sorted(rows, key=lambda row: _sort_value(row, sort_by), reverse=order is SortOrder.DESC)


def model_stats(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "totalModels": len(rows),
        "totalTokens": sum(r["totalTokens"] for r in rows),
        "totalCost": f"{sum(_row_cost(r) for r in rows):.2f}",
        "totalMessages": sum(r["messages"] for r in rows),
        "totalSessions": sum(r["sessions"] for r in rows),
        "mostUsedModel": rows[0]["model"] if rows else None,
    }


def filter_projects(
    rows: List[Dict[str, Any]],
    min_cost: float = 0.0,
    search: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Projects costing at least ``min_cost`` whose name contains ``search``."""
    selected = rows
    if min_cost > 0:
        selected = [p for p in selected if _row_cost(p, "totalCost") >= min_cost]
    if search:
        needle = search.lower()
        selected = [p for p in selected if needle in p["name"].lower()]
    return list(selected)


def project_stats(rows: List[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    cutoff = now - ACTIVE_PROJECT_WINDOW
    active = 0
    for project in rows:
        last = parse_timestamp(project.get("lastActivity"))
        if last is not None and last > cutoff:
            active += 1
    return {
        "totalProjects": len(rows),
        "totalCost": f"{sum(_row_cost(p, 'totalCost') for p in rows):.2f}",
        "totalTokens": sum(p["totalTokens"] for p in rows),
        "totalMessages": sum(p["messageCount"] for p in rows),
        "activeProjects": active,
    }


def summarize(report: Dict[str, Any]) -> Dict[str, Any]:
    """Headline totals across the whole report."""
    daily = report.get("dailyUsage", [])
    projects = report.get("projects", [])
    last_activity = next((p["lastActivity"] for p in projects if p.get("lastActivity")), None)
    return {
        "totalTokens": sum(d["totalTokens"] for d in daily),
        "totalCost": f"{sum(_row_cost(d) for d in daily):.2f}",
        "totalSessions": report.get("totalSessions", 0),
        "totalMessages": sum(p["messageCount"] for p in projects),
        "totalProjects": len(projects),
        "activeDays": len(daily),
        "lastActivity": last_activity,
    }


def total_tokens(rows: List[Dict[str, Any]]) -> int:
    return sum(row["totalTokens"] for row in rows)
