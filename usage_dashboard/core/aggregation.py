"""
Usage aggregation engine.

Folds parsed log records into daily, monthly, per-model and per-project
aggregates in a single pass. Every per-key update is a sum or a set union,
so the order in which records arrive never changes the result.
"""

import logging
from dataclasses import astuple, dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from usage_dashboard.storage.models import (
    DetailedUsageEntry,
    ProjectScan,
    RawLogRecord,
    format_timestamp,
)

from .pricing import PRICING_TABLE, PricingTable, compute_usage_metrics, format_cost
from .token_counter import UsageMetrics

logger = logging.getLogger(__name__)

UNKNOWN_MODEL = "unknown"

EntryLike = Union[DetailedUsageEntry, Dict[str, Any]]


class Accumulator:
    """Running totals for one aggregation key.

    Owned by a single aggregation run. Only ``finalize`` exposes its state.
    """

    __slots__ = (
        "new_input_tokens",
        "cache_creation_tokens",
        "cache_read_tokens",
        "output_tokens",
        "cost",
        "sessions",
        "messages",
    )

    def __init__(self):
        self.new_input_tokens = 0
        self.cache_creation_tokens = 0
        self.cache_read_tokens = 0
        self.output_tokens = 0
        self.cost = 0.0
        self.sessions: Set[str] = set()
        self.messages = 0

    def add(self, metrics: UsageMetrics, session_id: Optional[str]) -> None:
        self.new_input_tokens += metrics.new_input_tokens
        self.cache_creation_tokens += metrics.cache_creation_tokens
        self.cache_read_tokens += metrics.cache_read_tokens
        self.output_tokens += metrics.output_tokens
        self.cost += metrics.cost
        # Records without a session id are not counted as a session
        if session_id:
            self.sessions.add(session_id)
        self.messages += 1

    @property
    def total_tokens(self) -> int:
        return (
            self.new_input_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
            + self.output_tokens
        )

    def finalize(self, include_messages: bool = True) -> Dict[str, Any]:
        row = {
            "inputTokens": self.new_input_tokens,
            "outputTokens": self.output_tokens,
            "cachedTokens": self.cache_creation_tokens + self.cache_read_tokens,
            "totalTokens": self.total_tokens,
            "cost": format_cost(self.cost),
            "sessions": len(self.sessions),
            "newInputTokens": self.new_input_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "cacheReadTokens": self.cache_read_tokens,
        }
        if include_messages:
            row["messages"] = self.messages
        return row


@dataclass
class _ProjectTotals:
    name: str
    path: str
    usage: Accumulator = field(default_factory=Accumulator)
    message_count: int = 0
    last_activity: Optional[datetime] = None

    def observe(self, message_count: int, last_activity: Optional[datetime]) -> None:
        self.message_count += message_count
        if last_activity is not None and (self.last_activity is None or last_activity > self.last_activity):
            self.last_activity = last_activity

    def finalize(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "totalTokens": self.usage.total_tokens,
            "totalCost": format_cost(self.usage.cost),
            "messageCount": self.message_count,
            "lastActivity": format_timestamp(self.last_activity) if self.last_activity else None,
        }


def day_key(timestamp: datetime) -> str:
    """Calendar date (UTC) as ``YYYY-MM-DD``."""
    return timestamp.strftime("%Y-%m-%d")


def month_key(timestamp: datetime) -> str:
    """Zero padded ``YYYY-MM``; lexicographic order is chronological."""
    return timestamp.strftime("%Y-%m")


class AggregationContext:
    """State of one aggregation run.

    Constructed fresh for every run and passed to whatever feeds it records;
    nothing here outlives the run except the finalized report.
    """

    def __init__(self, table: PricingTable = PRICING_TABLE):
        self.table = table
        self.daily: Dict[str, Accumulator] = {}
        self.monthly: Dict[str, Accumulator] = {}
        self.models: Dict[str, Accumulator] = {}
        self.projects: Dict[str, _ProjectTotals] = {}
        self.detailed: List[DetailedUsageEntry] = []
        self.sessions: Set[str] = set()

    def _project(self, name: str, path: str) -> _ProjectTotals:
        if name not in self.projects:
            self.projects[name] = _ProjectTotals(name=name, path=path)
        return self.projects[name]

    def add_record(self, project: str, record: RawLogRecord, path: str = "") -> Optional[UsageMetrics]:
        """Fold one record into every view.

        Only records that carry both usage and a timestamp are aggregated,
        so every view sums exactly the same set of records.
        """
        if not record.has_usage or record.timestamp is None:
            return None

        model = record.model or UNKNOWN_MODEL
        metrics = compute_usage_metrics(record.usage, record.model, self.table)
        timestamp = record.timestamp

        for bucket, key in (
            (self.daily, day_key(timestamp)),
            (self.monthly, month_key(timestamp)),
            (self.models, model),
        ):
            if key not in bucket:
                bucket[key] = Accumulator()
            bucket[key].add(metrics, record.session_id)

        self._project(project, path).usage.add(metrics, record.session_id)

        if record.session_id:
            self.sessions.add(record.session_id)
        self.detailed.append(DetailedUsageEntry(
            timestamp=timestamp,
            session_id=record.session_id,
            model=model,
            metrics=metrics,
        ))
        return metrics

    def add_project(self, scan: ProjectScan) -> None:
        """Register a scanned project and fold all of its records."""
        totals = self._project(scan.name, scan.path)
        totals.observe(scan.message_count, scan.last_activity)
        for record in scan.records:
            self.add_record(scan.name, record, scan.path)

    def finalize(self) -> Dict[str, Any]:
        """Convert accumulators into the sorted report structure."""
        daily = [
            {"date": key, **acc.finalize(include_messages=False)}
            for key, acc in sorted(self.daily.items())
        ]
        monthly = [
            {"month": key, **acc.finalize()}
            for key, acc in sorted(self.monthly.items())
        ]
        models = sorted(
            ({"model": key, **acc.finalize()} for key, acc in self.models.items()),
            key=lambda row: (-row["totalTokens"], row["model"]),
        )
        projects = [
            totals.finalize()
            for totals in sorted(self.projects.values(), key=_project_sort_key)
        ]
        detailed = sorted(
            self.detailed,
            key=lambda e: (e.timestamp, e.session_id or "", e.model, astuple(e.metrics)),
        )
        return {
            "dailyUsage": daily,
            "monthlyUsage": monthly,
            "modelUsage": models,
            "projects": projects,
            "detailedUsage": [entry.to_dict() for entry in detailed],
            "totalSessions": len(self.sessions),
        }


def _project_sort_key(totals: _ProjectTotals):
    # Most recent activity first; projects with no activity last
    if totals.last_activity is None:
        return (1, 0.0, totals.name)
    return (0, -totals.last_activity.timestamp(), totals.name)


def aggregate_projects(
    scans: Iterable[ProjectScan],
    table: PricingTable = PRICING_TABLE,
) -> Dict[str, Any]:
    """Run one full aggregation pass over scanned projects."""
    context = AggregationContext(table)
    for scan in scans:
        context.add_project(scan)
    logger.debug(
        "Aggregated %d records across %d projects",
        len(context.detailed), len(context.projects),
    )
    return context.finalize()


def empty_report() -> Dict[str, Any]:
    return {
        "dailyUsage": [],
        "monthlyUsage": [],
        "modelUsage": [],
        "projects": [],
        "detailedUsage": [],
        "totalSessions": 0,
    }


def _coerce_entries(entries: Iterable[EntryLike]) -> List[DetailedUsageEntry]:
    coerced = []
    for entry in entries:
        if isinstance(entry, DetailedUsageEntry):
            coerced.append(entry)
            continue
        rebuilt = DetailedUsageEntry.from_dict(entry)
        if rebuilt is not None:
            coerced.append(rebuilt)
    return coerced


def _validate_hour(name: str, value: Optional[int]) -> None:
    if value is not None and not 0 <= value <= 23:
        raise ValueError(f"{name} must be between 0 and 23")


def local_hour(timestamp: datetime, tz: Optional[tzinfo] = None) -> int:
    """Hour of day in ``tz``, or the system local zone when tz is None."""
    return timestamp.astimezone(tz).hour


def filter_daily_by_hour(
    entries: Iterable[EntryLike],
    start_hour: Optional[int] = None,
    end_hour: Optional[int] = None,
    tz: Optional[tzinfo] = None,
) -> List[Dict[str, Any]]:
    """Re-aggregate daily usage from only the rows inside an hour window.

    The window is inclusive on both ends and either bound may be None
    (unbounded). Rows are folded with the same Accumulator as the primary
    pass; days left with no rows are dropped.

    Raises:
        ValueError: If a bound is outside 0-23
    """
    _validate_hour("start_hour", start_hour)
    _validate_hour("end_hour", end_hour)

    days: Dict[str, Accumulator] = {}
    for entry in _coerce_entries(entries):
        hour = local_hour(entry.timestamp, tz)
        if start_hour is not None and hour < start_hour:
            continue
        if end_hour is not None and hour > end_hour:
            continue
        key = day_key(entry.timestamp)
        if key not in days:
            days[key] = Accumulator()
        days[key].add(entry.metrics, entry.session_id)

    return [
        {"date": key, **acc.finalize(include_messages=False)}
        for key, acc in sorted(days.items())
    ]


def _in_date_range(value: str, start: Optional[str], end: Optional[str]) -> bool:
    if start and value < start:
        return False
    if end and value > end:
        return False
    return True


def build_hourly_usage(
    entries: Iterable[EntryLike],
    date: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    tz: Optional[tzinfo] = None,
) -> Dict[str, Any]:
    """Hour-of-day breakdown, a date x hour heatmap, and peak statistics."""
    hours: Dict[int, Accumulator] = {}
    cells: Dict[tuple, Accumulator] = {}

    for entry in _coerce_entries(entries):
        day = day_key(entry.timestamp)
        if date and day != date:
            continue
        if not _in_date_range(day, start_date, end_date):
            continue
        hour = local_hour(entry.timestamp, tz)
        for bucket, key in ((hours, hour), (cells, (day, hour))):
            if key not in bucket:
                bucket[key] = Accumulator()
            bucket[key].add(entry.metrics, entry.session_id)

    hourly_data = []
    for hour, acc in sorted(hours.items()):
        hourly_data.append({
            "hour": hour,
            "inputTokens": acc.new_input_tokens,
            "outputTokens": acc.output_tokens,
            "cachedTokens": acc.cache_creation_tokens + acc.cache_read_tokens,
            "totalTokens": acc.total_tokens,
            "cost": acc.cost,
            "sessions": len(acc.sessions),
            "requests": acc.messages,
            "avgCostPerRequest": acc.cost / acc.messages if acc.messages else 0,
            "avgTokensPerRequest": acc.total_tokens / acc.messages if acc.messages else 0,
        })

    heatmap_data = [
        {
            "date": day,
            "hour": hour,
            "inputTokens": acc.new_input_tokens,
            "outputTokens": acc.output_tokens,
            "cachedTokens": acc.cache_creation_tokens + acc.cache_read_tokens,
            "totalTokens": acc.total_tokens,
            "cost": acc.cost,
            "requests": acc.messages,
        }
        for (day, hour), acc in sorted(cells.items())
    ]

    return {
        "hourlyData": hourly_data,
        "heatmapData": heatmap_data,
        "statistics": _hourly_statistics(hourly_data),
    }


def _percentage(part: float, whole: float) -> float:
    return (part / whole) * 100 if whole else 0.0


def _hourly_statistics(hourly_data: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not hourly_data:
        return None

    total_cost = sum(h["cost"] for h in hourly_data)
    total_tokens = sum(h["totalTokens"] for h in hourly_data)
    total_requests = sum(h["requests"] for h in hourly_data)
    count = len(hourly_data)

    # max() keeps the earliest hour on ties
    peak_cost = max(hourly_data, key=lambda h: h["cost"])
    peak_tokens = max(hourly_data, key=lambda h: h["totalTokens"])
    peak_requests = max(hourly_data, key=lambda h: h["requests"])

    def cost_between(start: int, end: int) -> float:
        return sum(h["cost"] for h in hourly_data if start <= h["hour"] < end)

    return {
        "totalCost": total_cost,
        "totalTokens": total_tokens,
        "totalRequests": total_requests,
        "avgCostPerHour": total_cost / count,
        "avgTokensPerHour": total_tokens / count,
        "avgRequestsPerHour": total_requests / count,
        "peakCostHour": {
            "hour": peak_cost["hour"],
            "cost": peak_cost["cost"],
            "percentage": _percentage(peak_cost["cost"], total_cost),
        },
        "peakTokenHour": {
            "hour": peak_tokens["hour"],
            "tokens": peak_tokens["totalTokens"],
            "percentage": _percentage(peak_tokens["totalTokens"], total_tokens),
        },
        "peakRequestHour": {
            "hour": peak_requests["hour"],
            "requests": peak_requests["requests"],
            "percentage": _percentage(peak_requests["requests"], total_requests),
        },
        "morningUsage": cost_between(6, 12),
        "afternoonUsage": cost_between(12, 18),
        "eveningUsage": cost_between(18, 24),
        "nightUsage": cost_between(0, 6),
    }
