"""
Usage report service.

Entry point for consumers of the aggregate report: serves cached results,
runs the hybrid coordinator on a miss, and turns fatal failures into an
explicit empty result carrying a stable error code.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import tzinfo
from typing import Any, Dict, List, Optional

from usage_dashboard.config.loader import DashboardConfig

from .aggregation import build_hourly_usage, empty_report, filter_daily_by_hour
from .cache import CachePolicy, ResultCache, build_cache_key, fingerprint_directory
from .errors import ErrorCode, ReportError
from .executor import ExternalProcessorStrategy, HybridCoordinator, InProcessStrategy
from .views import (
    MODEL_SORT_FIELDS,
    PROJECT_SORT_FIELDS,
    SortOrder,
    filter_by_date_range,
    filter_months_by_year,
    filter_projects,
    model_stats,
    project_stats,
    sort_rows,
    summarize,
)

logger = logging.getLogger(__name__)

REPORT_CACHE_KEY = "report"


@dataclass(frozen=True)
class ReportResult:
    """Data for a request, or an empty value plus an explicit error."""
    data: Any
    error: Optional[ReportError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def build_coordinator(config: DashboardConfig) -> HybridCoordinator:
    """Wire the coordinator from configuration."""
    processor = config.external_processor
    external = None
    if processor.active:
        external = ExternalProcessorStrategy(
            executable=processor.path,
            timeout=processor.timeout_seconds,
            max_output_bytes=processor.max_output_bytes,
        )
    return HybridCoordinator(fallback=InProcessStrategy(), external=external)


class UsageReportService:
    """Cached access to usage reports and their views.

    Failed computations are never cached; the next request recomputes.
    """

    def __init__(
        self,
        config: DashboardConfig,
        coordinator: Optional[HybridCoordinator] = None,
        cache: Optional[ResultCache] = None,
    ):
        self.config = config
        self.root = config.projects_root
        self.coordinator = coordinator or build_coordinator(config)
        if cache is None:
            cache = ResultCache(
                policy=config.cache.policy,
                default_ttl=config.cache.ttl_seconds,
                fingerprint_source=lambda: fingerprint_directory(self.root),
            )
        self.cache = cache

    async def _fingerprint(self) -> Optional[str]:
        # Walking and stat'ing every log file blocks, so it runs on the default executor
        if self.cache.policy is not CachePolicy.FINGERPRINT:
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.cache.current_fingerprint)

    async def get_report(self) -> ReportResult:
        """Full aggregate report for the projects root."""
        fingerprint = await self._fingerprint()
        cached = self.cache.get_cache(REPORT_CACHE_KEY, fingerprint)
        if cached is not None:
            logger.debug("Returning cached usage report")
            return ReportResult(data=cached)
        execution = await self.coordinator.run(self.root)
        if not execution.ok:
            outcome = execution.outcome
            return ReportResult(
                data=empty_report(),
                error=ReportError(outcome.code or ErrorCode.PROJECT_PROCESSING_ERROR, outcome.error or ""),
            )

        self.cache.set_cache(REPORT_CACHE_KEY, execution.report, fingerprint=fingerprint)
        return ReportResult(data=execution.report)

    async def _cached_view(self, key: str, empty: Any, build) -> ReportResult:
        fingerprint = await self._fingerprint()
        cached = self.cache.get_cache(key, fingerprint)
        if cached is not None:
            logger.debug("Returning cached view %s", key)
            return ReportResult(data=cached)
        report = await self.get_report()
        if not report.ok:
            return ReportResult(data=empty, error=report.error)

        try:
            data = build(report.data)
        except ValueError as e:
            return ReportResult(data=empty, error=ReportError(ErrorCode.INVALID_QUERY, str(e)))

        self.cache.set_cache(key, data, fingerprint=fingerprint)
        return ReportResult(data=data)

    async def get_daily_usage(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        start_hour: Optional[int] = None,
        end_hour: Optional[int] = None,
        tz: Optional[tzinfo] = None,
    ) -> ReportResult:
        """Daily rows, optionally limited to a date range and an hour window."""
        key = build_cache_key(
            "daily",
            start_date=start_date,
            end_date=end_date,
            start_hour=start_hour,
            end_hour=end_hour,
            tz=tz,
        )

        def build(report: Dict[str, Any]) -> List[Dict[str, Any]]:
            if start_hour is not None or end_hour is not None:
                rows = filter_daily_by_hour(report["detailedUsage"], start_hour, end_hour, tz)
            else:
                rows = report["dailyUsage"]
            return filter_by_date_range(rows, start_date, end_date)

        return await self._cached_view(key, [], build)

    async def get_monthly_usage(self, year: Optional[int] = None) -> ReportResult:
        key = build_cache_key("monthly", year=year)
        return await self._cached_view(
            key, [], lambda report: filter_months_by_year(report["monthlyUsage"], year)
        )

    async def get_model_usage(
        self,
        sort_by: str = "totalTokens",
        order: SortOrder = SortOrder.DESC,
    ) -> ReportResult:
        """Per-model rows with totals; ``data`` is ``{"data": rows, "stats": ...}``."""
        key = build_cache_key("models", sort_by=sort_by, order=order)

        def build(report: Dict[str, Any]) -> Dict[str, Any]:
            rows = sort_rows(report["modelUsage"], sort_by, order, MODEL_SORT_FIELDS)
            return {"data": rows, "stats": model_stats(rows)}

        return await self._cached_view(key, {"data": [], "stats": None}, build)

    async def get_projects(
        self,
        sort_by: str = "lastActivity",
        order: SortOrder = SortOrder.DESC,
        min_cost: float = 0.0,
        search: Optional[str] = None,
    ) -> ReportResult:
        key = build_cache_key("projects", sort_by=sort_by, order=order, min_cost=min_cost, search=search)

        def build(report: Dict[str, Any]) -> Dict[str, Any]:
            rows = filter_projects(report["projects"], min_cost, search)
            rows = sort_rows(rows, sort_by, order, PROJECT_SORT_FIELDS)
            return {"data": rows, "stats": project_stats(rows)}

        return await self._cached_view(key, {"data": [], "stats": None}, build)

    async def get_hourly_usage(
        self,
        date: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        tz: Optional[tzinfo] = None,
    ) -> ReportResult:
        key = build_cache_key("hourly", date=date, start_date=start_date, end_date=end_date, tz=tz)
        empty = {"hourlyData": [], "heatmapData": [], "statistics": None}
        return await self._cached_view(
            key,
            empty,
            lambda report: build_hourly_usage(report["detailedUsage"], date, start_date, end_date, tz),
        )

    async def get_summary(self) -> ReportResult:
        return await self._cached_view(build_cache_key("summary"), {}, summarize)

    def clear_cache(self) -> None:
        self.cache.clear_cache()
