"""
Tests for the usage report service.

Covers caching, error results and the derived views.
"""

import json
import os
import sys
import threading
from datetime import timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from usage_dashboard.config.loader import CacheConfig, DashboardConfig, ExternalProcessorConfig
from usage_dashboard.core.aggregation import empty_report
from usage_dashboard.core.cache import CachePolicy, ResultCache, fingerprint_directory
from usage_dashboard.core.errors import ErrorCode
from usage_dashboard.core.executor import HybridCoordinator, InProcessStrategy
from usage_dashboard.core.service import UsageReportService, build_coordinator
from usage_dashboard.core.views import SortOrder


def _entry(timestamp, session, model, **usage):
    return json.dumps({
        "timestamp": timestamp,
        "sessionId": session,
        "message": {"model": model, "usage": usage},
    })


def _write_project(root: Path, name: str, lines) -> Path:
    project = root / name
    project.mkdir(parents=True, exist_ok=True)
    log = project / "session.jsonl"
    log.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return log


def _config(root: Path, policy: CachePolicy = CachePolicy.FINGERPRINT) -> DashboardConfig:
    return DashboardConfig(
        projects_path=str(root),
        cache=CacheConfig(policy=policy),
        external_processor=ExternalProcessorConfig(enabled=False),
    )


class CountingStrategy(InProcessStrategy):
    """In-process strategy that records how often it ran."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def run(self, root):
        self.calls += 1
        return await super().run(root)


class TestBuildCoordinator:

    def test_no_external_when_unconfigured(self, tmp_path):
        assert build_coordinator(_config(tmp_path)).external is None

    def test_external_when_path_set(self, tmp_path):
        config = DashboardConfig(
            projects_path=str(tmp_path),
            external_processor=ExternalProcessorConfig(path="/opt/processor", timeout_seconds=5),
        )
        coordinator = build_coordinator(config)
        assert coordinator.external.executable == "/opt/processor"
        assert coordinator.external.timeout == 5


class TestReportService:
    """Full report retrieval."""

    def setup_method(self):
        self.strategy = CountingStrategy()

    def _service(self, root, policy=CachePolicy.FINGERPRINT):
        return UsageReportService(
            _config(root, policy),
            coordinator=HybridCoordinator(fallback=self.strategy),
        )

    @pytest.mark.asyncio
    async def test_missing_root_returns_error(self, tmp_path):
        service = self._service(tmp_path / "missing")
        result = await service.get_report()
        assert not result.ok
        assert result.error.code == ErrorCode.PROJECTS_DIR_NOT_FOUND
        assert result.data == empty_report()

    @pytest.mark.asyncio
    async def test_errors_are_not_cached(self, tmp_path):
        root = tmp_path / "projects"
        service = self._service(root)
        assert not (await service.get_report()).ok

        _write_project(root, "alpha", [_entry("2025-01-01T10:00:00Z", "s1", "claude-sonnet-4-20250514", input_tokens=10)])
        result = await service.get_report()
        assert result.ok
        assert result.data["dailyUsage"][0]["totalTokens"] == 10

    @pytest.mark.asyncio
    async def test_report_is_cached(self, tmp_path):
        _write_project(tmp_path, "alpha", [_entry("2025-01-01T10:00:00Z", "s1", "claude-sonnet-4-20250514", input_tokens=10)])
        service = self._service(tmp_path)

        first = await service.get_report()
        second = await service.get_report()

        assert first.data == second.data
        assert self.strategy.calls == 1

    @pytest.mark.asyncio
    async def test_cached_report_cannot_be_mutated(self, tmp_path):
        _write_project(tmp_path, "alpha", [_entry("2025-01-01T10:00:00Z", "s1", "claude-sonnet-4-20250514", input_tokens=10)])
        service = self._service(tmp_path)

        first = await service.get_report()
        first.data["dailyUsage"].clear()
        second = await service.get_report()
        assert len(second.data["dailyUsage"]) == 1

    @pytest.mark.asyncio
    async def test_changed_logs_invalidate_cache(self, tmp_path):
        log = _write_project(tmp_path, "alpha", [_entry("2025-01-01T10:00:00Z", "s1", "claude-sonnet-4-20250514", input_tokens=10)])
        service = self._service(tmp_path)
        await service.get_report()

        with open(log, "a", encoding="utf-8") as f:
            f.write(_entry("2025-01-02T10:00:00Z", "s1", "claude-sonnet-4-20250514", input_tokens=5) + "\n")
        stat = log.stat()
        os.utime(log, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))

        result = await service.get_report()
        assert self.strategy.calls == 2
        assert len(result.data["dailyUsage"]) == 2

    @pytest.mark.asyncio
    async def test_ttl_policy_ignores_file_changes(self, tmp_path):
        log = _write_project(tmp_path, "alpha", [_entry("2025-01-01T10:00:00Z", "s1", "claude-sonnet-4-20250514", input_tokens=10)])
        service = self._service(tmp_path, policy=CachePolicy.TTL)
        await service.get_report()

        stat = log.stat()
        os.utime(log, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
        await service.get_report()
        assert self.strategy.calls == 1

    @pytest.mark.asyncio
    async def test_clear_cache(self, tmp_path):
        _write_project(tmp_path, "alpha", [_entry("2025-01-01T10:00:00Z", "s1", "claude-sonnet-4-20250514", input_tokens=10)])
        service = self._service(tmp_path)
        await service.get_report()
        service.clear_cache()
        await service.get_report()
        assert self.strategy.calls == 2

    @pytest.mark.asyncio
    async def test_deeply_nested_line_keeps_sibling_usage(self, tmp_path):
        _write_project(tmp_path, "alpha", [_entry("2025-01-01T10:00:00Z", "s1", "claude-sonnet-4-20250514", input_tokens=15)])
        _write_project(tmp_path, "beta", ["[" * 100000])
        result = await self._service(tmp_path).get_report()
        assert result.ok
        assert result.data["dailyUsage"][0]["totalTokens"] == 15

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="uses a /bin/sh stub")
    async def test_missing_root_with_external_processor(self, tmp_path):
        payload = tmp_path / "payload.json"
        payload.write_text(json.dumps(empty_report()), encoding="utf-8")
        script = tmp_path / "processor"
        script.write_text(f'#!/bin/sh\ncat "{payload}"\n', encoding="utf-8")
        script.chmod(0o755)
        config = DashboardConfig(
            projects_path=str(tmp_path / "missing"),
            external_processor=ExternalProcessorConfig(path=str(script)),
        )
        result = await UsageReportService(config).get_report()
        assert not result.ok
        assert result.error.code == ErrorCode.PROJECTS_DIR_NOT_FOUND

    @pytest.mark.asyncio
    async def test_fingerprint_taken_off_the_event_loop(self, tmp_path):
        _write_project(tmp_path, "alpha", [_entry("2025-01-01T10:00:00Z", "s1", "claude-sonnet-4-20250514", input_tokens=10)])
        threads = []

        def source():
            threads.append(threading.get_ident())
            return fingerprint_directory(tmp_path)

        cache = ResultCache(policy=CachePolicy.FINGERPRINT, fingerprint_source=source)
        service = UsageReportService(
            _config(tmp_path),
            coordinator=HybridCoordinator(fallback=self.strategy),
            cache=cache,
        )
        await service.get_report()
        await service.get_report()

        assert self.strategy.calls == 1
        assert threads
        assert threading.get_ident() not in threads


class TestViews:
    """Derived views over the cached report."""

    def setup_method(self):
        self.strategy = CountingStrategy()

    def _service(self, root):
        _write_project(root, "alpha", [
            _entry("2025-01-01T10:00:00Z", "s1", "claude-sonnet-4-20250514", input_tokens=1000, output_tokens=500),
            _entry("2025-01-01T15:00:00Z", "s2", "claude-sonnet-4-20250514", input_tokens=2000, output_tokens=1000, cache_read_input_tokens=500),
        ])
        _write_project(root, "beta", [
            _entry("2025-02-03T09:00:00Z", "s3", "claude-3-opus-20240229", input_tokens=100000, output_tokens=20000),
        ])
        return UsageReportService(_config(root), coordinator=HybridCoordinator(fallback=self.strategy))

    @pytest.mark.asyncio
    async def test_daily_hour_window(self, tmp_path):
        service = self._service(tmp_path)
        result = await service.get_daily_usage(start_hour=12, end_hour=18, tz=timezone.utc)
        assert result.ok
        assert [(d["date"], d["totalTokens"]) for d in result.data] == [("2025-01-01", 3500)]

    @pytest.mark.asyncio
    async def test_daily_date_range(self, tmp_path):
        service = self._service(tmp_path)
        result = await service.get_daily_usage(start_date="2025-02-01")
        assert [d["date"] for d in result.data] == ["2025-02-03"]

    @pytest.mark.asyncio
    async def test_invalid_hour(self, tmp_path):
        service = self._service(tmp_path)
        result = await service.get_daily_usage(start_hour=30)
        assert result.error.code == ErrorCode.INVALID_QUERY
        assert result.data == []

    @pytest.mark.asyncio
    async def test_views_share_one_computation(self, tmp_path):
        service = self._service(tmp_path)
        await service.get_daily_usage()
        await service.get_monthly_usage()
        await service.get_model_usage()
        await service.get_summary()
        assert self.strategy.calls == 1

    @pytest.mark.asyncio
    async def test_monthly_year_filter(self, tmp_path):
        service = self._service(tmp_path)
        assert [m["month"] for m in (await service.get_monthly_usage()).data] == ["2025-01", "2025-02"]
        assert (await service.get_monthly_usage(year=2024)).data == []

    @pytest.mark.asyncio
    async def test_model_usage(self, tmp_path):
        service = self._service(tmp_path)
        result = await service.get_model_usage()
        assert result.data["data"][0]["model"] == "claude-3-opus-20240229"
        assert result.data["stats"]["totalModels"] == 2

        ascending = await service.get_model_usage(sort_by="model", order=SortOrder.ASC)
        assert ascending.data["data"][0]["model"] == "claude-3-opus-20240229"

    @pytest.mark.asyncio
    async def test_bad_sort_field(self, tmp_path):
        service = self._service(tmp_path)
        result = await service.get_model_usage(sort_by="nope")
        assert result.error.code == ErrorCode.INVALID_QUERY

    @pytest.mark.asyncio
    async def test_projects(self, tmp_path):
        service = self._service(tmp_path)
        result = await service.get_projects()
        assert [p["name"] for p in result.data["data"]] == ["beta", "alpha"]

        cheap = await service.get_projects(search="ALP")
        assert [p["name"] for p in cheap.data["data"]] == ["alpha"]

        expensive = await service.get_projects(min_cost=1.0)
        assert [p["name"] for p in expensive.data["data"]] == ["beta"]

    @pytest.mark.asyncio
    async def test_hourly(self, tmp_path):
        service = self._service(tmp_path)
        result = await service.get_hourly_usage(date="2025-01-01", tz=timezone.utc)
        assert [h["hour"] for h in result.data["hourlyData"]] == [10, 15]

    @pytest.mark.asyncio
    async def test_summary(self, tmp_path):
        service = self._service(tmp_path)
        summary = (await service.get_summary()).data
        assert summary["totalSessions"] == 3
        assert summary["totalProjects"] == 2
        assert summary["activeDays"] == 2
        assert summary["lastActivity"] == "2025-02-03T09:00:00.000Z"

    @pytest.mark.asyncio
    async def test_view_errors_follow_report(self, tmp_path):
        service = UsageReportService(
            _config(tmp_path / "missing"),
            coordinator=HybridCoordinator(fallback=self.strategy),
        )
        result = await service.get_projects()
        assert result.error.code == ErrorCode.PROJECTS_DIR_NOT_FOUND
        assert result.data == {"data": [], "stats": None}

    @pytest.mark.asyncio
    async def test_coordinator_is_called_with_root(self, tmp_path):
        service = self._service(tmp_path)
        with patch.object(service.coordinator, "run", wraps=service.coordinator.run) as run:
            await service.get_report()
        run.assert_called_once_with(tmp_path)
