"""
Unit tests for the aggregation engine.

Tests cross-view consistency, ordering, hour filtering and the hourly
breakdown.
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from usage_dashboard.core.aggregation import (
    UNKNOWN_MODEL,
    AggregationContext,
    aggregate_projects,
    build_hourly_usage,
    empty_report,
    filter_daily_by_hour,
)
from usage_dashboard.core.pricing import PRICING_TABLE, compute_usage_metrics
from usage_dashboard.core.token_counter import TokenUsage
from usage_dashboard.storage.models import ProjectScan, RawLogRecord


def _record(timestamp, session="s1", model=None, **usage):
    return RawLogRecord(
        timestamp=datetime.fromisoformat(timestamp).replace(tzinfo=timezone.utc),
        session_id=session,
        model=model,
        usage=TokenUsage(**usage) if usage else None,
    )


def _scan(name, records):
    last = max((r.timestamp for r in records if r.timestamp), default=None)
    return ProjectScan(
        name=name,
        path=f"/logs/{name}",
        records=tuple(records),
        message_count=len(records),
        last_activity=last,
    )


RECORD_A = _record("2025-01-01T10:00:00", session="s1", input_tokens=1000, output_tokens=500)
RECORD_B = _record(
    "2025-01-01T15:00:00",
    session="s2",
    input_tokens=2000,
    output_tokens=1000,
    cache_read_input_tokens=500,
)


class TestEndToEnd:
    """One project, two records."""

    def setup_method(self):
        self.report = aggregate_projects([_scan("demo", [RECORD_A, RECORD_B])])

    def test_daily_totals(self):
        daily = self.report["dailyUsage"]
        assert len(daily) == 1
        day = daily[0]
        assert day["date"] == "2025-01-01"
        assert day["totalTokens"] == 5000
        assert day["sessions"] == 2
        assert day["cachedTokens"] == 500
        assert "messages" not in day

    def test_cost_is_sum_of_record_costs(self):
        expected = sum(
            compute_usage_metrics(r.usage, r.model, PRICING_TABLE).cost
            for r in (RECORD_A, RECORD_B)
        )
        assert float(self.report["dailyUsage"][0]["cost"]) == pytest.approx(expected, abs=5e-5)
        assert expected == pytest.approx(0.0105 + 0.02115)

    def test_unknown_model_key(self):
        assert [m["model"] for m in self.report["modelUsage"]] == [UNKNOWN_MODEL]

    def test_monthly_and_project(self):
        month = self.report["monthlyUsage"][0]
        assert month["month"] == "2025-01"
        assert month["messages"] == 2
        project = self.report["projects"][0]
        assert project["totalTokens"] == 5000
        assert project["lastActivity"] == "2025-01-01T15:00:00.000Z"
        assert self.report["totalSessions"] == 2

    def test_detailed_usage_sorted(self):
        detailed = self.report["detailedUsage"]
        assert [d["timestamp"] for d in detailed] == [
            "2025-01-01T10:00:00.000Z",
            "2025-01-01T15:00:00.000Z",
        ]
        assert sum(d["totalTokens"] for d in detailed) == 5000


class TestInvariants:
    """Cross-view consistency and order independence."""

    def _records(self):
        rng = random.Random(7)
        models = ["claude-sonnet-4-20250514", "claude-3-opus-20240229", "claude-3-5-haiku-latest", None]
        start = datetime(2024, 12, 28, tzinfo=timezone.utc)
        records = []
        for i in range(60):
            records.append(RawLogRecord(
                timestamp=start + timedelta(hours=rng.randint(0, 24 * 10)),
                session_id=rng.choice(["a", "b", "c", None]),
                model=rng.choice(models),
                usage=TokenUsage(
                    input_tokens=rng.randint(0, 5000),
                    output_tokens=rng.randint(0, 2000),
                    cache_creation_input_tokens=rng.randint(0, 300),
                    cache_read_input_tokens=rng.randint(0, 9000),
                ),
            ))
        # records that must not be aggregated
        records.append(RawLogRecord(timestamp=start, session_id="z"))
        records.append(RawLogRecord(session_id="z", usage=TokenUsage(input_tokens=999)))
        return records

    def test_views_sum_to_same_totals(self):
        records = self._records()
        report = aggregate_projects([_scan("one", records[:30]), _scan("two", records[30:])])

        totals = {
            name: sum(row["totalTokens"] for row in report[name])
            for name in ("dailyUsage", "monthlyUsage", "modelUsage", "projects", "detailedUsage")
        }
        assert len(set(totals.values())) == 1

        costs = [
            sum(float(row["cost"]) for row in report["dailyUsage"]),
            sum(float(row["cost"]) for row in report["monthlyUsage"]),
            sum(float(row["cost"]) for row in report["modelUsage"]),
            sum(float(row["totalCost"]) for row in report["projects"]),
        ]
        for cost in costs:
            assert cost == pytest.approx(costs[0], abs=0.01)

    def test_total_tokens_identity(self):
        report = aggregate_projects([_scan("one", self._records())])
        for row in report["dailyUsage"] + report["modelUsage"]:
            assert row["totalTokens"] == (
                row["newInputTokens"] + row["cacheCreationTokens"]
                + row["cacheReadTokens"] + row["outputTokens"]
            )
            assert row["cachedTokens"] == row["cacheCreationTokens"] + row["cacheReadTokens"]

    def test_sessions_exclude_missing_ids(self):
        report = aggregate_projects([_scan("one", self._records())])
        assert report["totalSessions"] <= 3

    def test_order_independent(self):
        records = self._records()
        shuffled = list(records)
        random.Random(3).shuffle(shuffled)
        first = aggregate_projects([_scan("one", records)])
        second = aggregate_projects([_scan("one", shuffled)])
        assert first == second

    def test_idempotent(self):
        scans = [_scan("one", self._records())]
        assert aggregate_projects(scans) == aggregate_projects(scans)

    def test_ordering(self):
        report = aggregate_projects([_scan("one", self._records())])
        dates = [d["date"] for d in report["dailyUsage"]]
        assert dates == sorted(dates)
        months = [m["month"] for m in report["monthlyUsage"]]
        assert months == ["2024-12", "2025-01"]
        tokens = [m["totalTokens"] for m in report["modelUsage"]]
        assert tokens == sorted(tokens, reverse=True)


class TestProjects:
    """Project listing."""

    def test_projects_sorted_by_last_activity(self):
        old = _scan("old", [_record("2024-06-01T00:00:00", input_tokens=1)])
        new = _scan("new", [_record("2025-06-01T00:00:00", input_tokens=1)])
        idle = ProjectScan(name="idle", path="/logs/idle", records=(), message_count=0, last_activity=None)
        report = aggregate_projects([idle, old, new])
        assert [p["name"] for p in report["projects"]] == ["new", "old", "idle"]
        assert report["projects"][2]["totalCost"] == "0.0000"

    def test_message_count_includes_records_without_usage(self):
        records = [_record("2025-01-01T10:00:00", input_tokens=10), _record("2025-01-01T11:00:00")]
        report = aggregate_projects([_scan("p", records)])
        assert report["projects"][0]["messageCount"] == 2
        assert report["monthlyUsage"][0]["messages"] == 1

    def test_context_is_fresh_per_run(self):
        context = AggregationContext()
        context.add_project(_scan("p", [RECORD_A]))
        assert AggregationContext().finalize() == empty_report()


class TestHourFilter:
    """Daily re-aggregation restricted to an hour window."""

    def setup_method(self):
        self.detailed = aggregate_projects([_scan("demo", [RECORD_A, RECORD_B])])["detailedUsage"]

    def test_window_keeps_only_matching_records(self):
        rows = filter_daily_by_hour(self.detailed, 12, 18, tz=timezone.utc)
        assert len(rows) == 1
        assert rows[0]["totalTokens"] == 3500
        assert rows[0]["sessions"] == 1

    def test_bounds_are_inclusive(self):
        rows = filter_daily_by_hour(self.detailed, 10, 10, tz=timezone.utc)
        assert rows[0]["totalTokens"] == 1500

    def test_open_bounds(self):
        assert filter_daily_by_hour(self.detailed, None, 11, tz=timezone.utc)[0]["totalTokens"] == 1500
        assert filter_daily_by_hour(self.detailed, 11, None, tz=timezone.utc)[0]["totalTokens"] == 3500

    def test_inverted_window_is_empty(self):
        assert filter_daily_by_hour(self.detailed, 18, 12, tz=timezone.utc) == []

    def test_hours_use_given_zone(self):
        plus_three = timezone(timedelta(hours=3))
        # 10:00Z is 13:00 at +03:00
        rows = filter_daily_by_hour(self.detailed, 13, 13, tz=plus_three)
        assert rows[0]["totalTokens"] == 1500

    @pytest.mark.parametrize("start, end", [(-1, 5), (0, 24)])
    def test_out_of_range_hours(self, start, end):
        with pytest.raises(ValueError):
            filter_daily_by_hour(self.detailed, start, end)


class TestHourlyUsage:
    """Hour-of-day breakdown."""

    def setup_method(self):
        records = [
            RECORD_A,
            RECORD_B,
            _record("2025-01-02T15:30:00", session="s3", input_tokens=100),
        ]
        self.detailed = aggregate_projects([_scan("demo", records)])["detailedUsage"]

    def test_hourly_rows(self):
        result = build_hourly_usage(self.detailed, tz=timezone.utc)
        assert [h["hour"] for h in result["hourlyData"]] == [10, 15]
        assert result["hourlyData"][1]["requests"] == 2
        assert len(result["heatmapData"]) == 3

    def test_single_date(self):
        result = build_hourly_usage(self.detailed, date="2025-01-02", tz=timezone.utc)
        assert [h["hour"] for h in result["hourlyData"]] == [15]

    def test_statistics(self):
        stats = build_hourly_usage(self.detailed, tz=timezone.utc)["statistics"]
        assert stats["peakCostHour"]["hour"] == 15
        assert stats["totalRequests"] == 3
        assert stats["morningUsage"] + stats["afternoonUsage"] == pytest.approx(stats["totalCost"])
        assert stats["nightUsage"] == 0

    def test_empty(self):
        result = build_hourly_usage([], tz=timezone.utc)
        assert result == {"hourlyData": [], "heatmapData": [], "statistics": None}
