"""Tests for usage and cost accounting."""

import csv
import io
import json
from datetime import datetime, timedelta

import pytest

from llm_runtime.providers.cost_tracker import (
    AlertType,
    CostTracker,
    CostTrackerConfig,
    CostTrackerManager,
    RequestRecord,
)
from llm_runtime.providers.exceptions import ConfigurationError, InvalidRequestError
from llm_runtime.providers.unified_models import TokenUsage, utcnow


@pytest.fixture
def tracker():
    return CostTracker(
        CostTrackerConfig(provider="openai", input_token_cost=0.5, output_token_cost=1.5)
    )


def usage(input_tokens=1000, output_tokens=500):
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)


class TestCalculateCost:
    """Test pricing of a single call."""

    def test_per_million_pricing(self, tracker):
        breakdown = tracker.calculate_cost(usage())
        assert breakdown.input_cost == pytest.approx(0.0005)
        assert breakdown.output_cost == pytest.approx(0.00075)
        assert breakdown.total_cost == pytest.approx(0.00125)
        assert breakdown.currency == "USD"

    def test_provided_cost_wins(self, tracker):
        breakdown = tracker.calculate_cost(usage(), provided_cost=0.42)
        assert breakdown.total_cost == 0.42
        assert breakdown.input_cost == 0.0
        assert breakdown.output_cost == 0.0
        assert breakdown.input_tokens == 1000

    def test_cache_tokens(self):
        tracker = CostTracker(
            CostTrackerConfig(provider="anthropic", cache_read_cost=1.0, cache_write_cost=2.0)
        )
        breakdown = tracker.calculate_cost(
            TokenUsage(cache_tokens_read=1_000_000, cache_tokens_write=500_000)
        )
        assert breakdown.cache_cost == pytest.approx(2.0)
        assert breakdown.total_cost == pytest.approx(2.0)

    def test_model_rates(self):
        tracker = CostTracker(
            CostTrackerConfig(
                provider="openai",
                input_token_cost=1.0,
                output_token_cost=1.0,
                model_rates={"gpt-4": (30.0, 60.0)},
            )
        )
        assert tracker.calculate_cost(usage(1_000_000, 0), model="gpt-4").total_cost == 30.0
        assert tracker.calculate_cost(usage(1_000_000, 0), model="other").total_cost == 1.0

    def test_estimate_does_not_record(self, tracker):
        tracker.estimate_cost(usage())
        assert tracker.get_stats().total_requests == 0


class TestTrackUsage:
    """Test the ledger."""

    @pytest.mark.asyncio
    async def test_track_appends_record(self, tracker):
        breakdown = await tracker.track_usage(
            usage(), metadata={"model": "gpt-4o", "request_id": "req-1"}
        )
        assert breakdown.total_cost == pytest.approx(0.00125)

        stats = tracker.get_stats()
        assert stats.total_requests == 1
        assert stats.total_tokens == 1500
        assert stats.total_cost == pytest.approx(0.00125)
        record = stats.request_history[0]
        assert record.model == "gpt-4o"
        assert record.request_id == "req-1"

    @pytest.mark.asyncio
    async def test_tracking_disabled(self):
        tracker = CostTracker(CostTrackerConfig(provider="x", tracking_enabled=False))
        await tracker.track_usage(usage())
        assert tracker.get_stats().total_requests == 0

    @pytest.mark.asyncio
    async def test_aggregates(self, tracker):
        await tracker.track_usage(usage(1000, 500))
        await tracker.track_usage(usage(3000, 1500))
        stats = tracker.get_stats()
        assert stats.total_input_tokens == 4000
        assert stats.total_output_tokens == 2000
        assert stats.average_tokens_per_request == 3000
        assert stats.cost_breakdown["input"] == pytest.approx(0.002)
        assert stats.cost_breakdown["output"] == pytest.approx(0.003)
        assert len(stats.daily_stats) == 1
        assert stats.daily_stats[0].requests == 2

    def test_history_is_newest_first(self, tracker):
        now = utcnow()
        tracker._records = [
            RequestRecord(timestamp=now - timedelta(minutes=5), tokens=usage(), cost=0.1,
                          request_id="old"),
            RequestRecord(timestamp=now, tokens=usage(), cost=0.1, request_id="new"),
        ]
        history = tracker.get_stats().request_history
        assert [r.request_id for r in history] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_period_bounds_are_inclusive(self, tracker):
        await tracker.track_usage(usage())
        timestamp = tracker.get_stats().request_history[0].timestamp
        assert tracker.get_stats_for_period(timestamp, timestamp).total_requests == 1
        later = timestamp + timedelta(seconds=1)
        assert tracker.get_stats_for_period(later, later + timedelta(days=1)).total_requests == 0

    @pytest.mark.asyncio
    async def test_naive_period_bounds_read_as_utc(self, tracker):
        await tracker.track_usage(usage())
        stats = tracker.get_stats_for_period(datetime(2000, 1, 1), datetime(2100, 1, 1))
        assert stats.total_requests == 1

        timestamp = tracker.get_stats().request_history[0].timestamp
        after = timestamp.replace(tzinfo=None) + timedelta(seconds=1)
        assert tracker.get_stats_for_period(after, datetime(2100, 1, 1)).total_requests == 0

    @pytest.mark.asyncio
    async def test_today_and_month(self, tracker):
        await tracker.track_usage(usage())
        assert tracker.get_today_stats().total_requests == 1
        assert tracker.get_month_stats().total_requests == 1

    @pytest.mark.asyncio
    async def test_old_records_are_pruned(self, tracker):
        stale = RequestRecord(
            timestamp=utcnow() - timedelta(days=91), tokens=usage(), cost=1.0
        )
        tracker._records.append(stale)
        await tracker.track_usage(usage())
        assert tracker.get_stats().total_requests == 1

    @pytest.mark.asyncio
    async def test_reset(self, tracker):
        await tracker.track_usage(usage())
        await tracker.reset()
        assert tracker.get_stats().total_requests == 0


class TestAlerts:
    """Test cost threshold alerts."""

    @pytest.mark.asyncio
    async def test_alert_fires_once(self, tracker, caplog):
        fired = []
        tracker.on_alert = fired.append
        tracker.set_alert(AlertType.TOTAL, 0.002)

        await tracker.track_usage(usage())
        assert fired == []

        with caplog.at_level("WARNING"):
            await tracker.track_usage(usage())
            await tracker.track_usage(usage())
        assert len(fired) == 1
        assert fired[0].triggered
        assert "total cost threshold exceeded" in fired[0].message
        assert "Cost alert" in caplog.text

    @pytest.mark.asyncio
    async def test_daily_alert(self, tracker):
        tracker.set_alert("daily", 0.001)
        await tracker.track_usage(usage())
        alert = tracker.get_alerts()[0]
        assert alert.type == AlertType.DAILY
        assert alert.triggered
        assert alert.current == pytest.approx(0.00125)

    @pytest.mark.asyncio
    async def test_setting_again_rearms(self, tracker):
        tracker.set_alert(AlertType.TOTAL, 0.001)
        await tracker.track_usage(usage())
        tracker.set_alert(AlertType.TOTAL, 0.001)
        assert tracker.get_alerts()[0].triggered is False

    def test_negative_threshold(self, tracker):
        with pytest.raises(InvalidRequestError):
            tracker.set_alert(AlertType.TOTAL, -1)

    def test_unknown_alert_type(self, tracker):
        with pytest.raises(ValueError):
            tracker.set_alert("weekly", 1.0)


class TestExportImport:
    """Test ledger export and import."""

    @pytest.mark.asyncio
    async def test_csv_export(self, tracker):
        await tracker.track_usage(usage(), metadata={"model": "gpt-4o", "request_id": "r1"})
        rows = list(csv.DictReader(io.StringIO(tracker.export_data("csv"))))
        assert len(rows) == 1
        assert rows[0]["inputTokens"] == "1000"
        assert rows[0]["outputTokens"] == "500"
        assert rows[0]["totalTokens"] == "1500"
        assert rows[0]["cost"] == "0.001250"
        assert rows[0]["model"] == "gpt-4o"
        assert rows[0]["requestId"] == "r1"

    @pytest.mark.asyncio
    async def test_json_export(self, tracker):
        await tracker.track_usage(usage())
        data = json.loads(tracker.export_data("json"))
        assert data["provider"] == "openai"
        assert data["total_requests"] == 1
        assert len(data["request_history"]) == 1

    def test_unsupported_format(self, tracker):
        with pytest.raises(InvalidRequestError):
            tracker.export_data("xml")

    @pytest.mark.asyncio
    async def test_import_restores_ledger(self, tracker):
        await tracker.track_usage(usage(), metadata={"request_id": "r1"})
        exported_json = tracker.export_data("json")
        exported_csv = tracker.export_data("csv")

        from_json = CostTracker(CostTrackerConfig(provider="openai"))
        assert await from_json.import_data(exported_json, "json") == 1
        assert from_json.get_stats().total_cost == pytest.approx(0.00125)
        assert from_json.get_stats().request_history[0].request_id == "r1"

        from_csv = CostTracker(CostTrackerConfig(provider="openai"))
        assert await from_csv.import_data(exported_csv, "csv") == 1
        assert from_csv.get_stats().total_tokens == 1500

    @pytest.mark.asyncio
    @pytest.mark.parametrize("document", [
        "[]",
        '{"openai": {"request_history": []}}',
        '{"request_history": "none"}',
        '{"request_history": [1, 2]}',
    ])
    async def test_json_import_rejects_other_documents(self, tracker, document):
        with pytest.raises(InvalidRequestError, match="request_history"):
            await tracker.import_data(document, "json")
        assert tracker.get_stats().total_requests == 0

    def test_update_config(self, tracker):
        tracker.update_config(input_token_cost=2.0)
        assert tracker.config.input_token_cost == 2.0
        assert tracker.config.output_token_cost == 1.5


class TestCostTrackerManager:
    def test_requires_config_for_new_tracker(self):
        manager = CostTrackerManager()
        with pytest.raises(ConfigurationError):
            manager.get_tracker("openai")

    @pytest.mark.asyncio
    async def test_total_cost_across_providers(self):
        manager = CostTrackerManager()
        openai = manager.get_tracker(
            "openai", CostTrackerConfig(provider="openai", input_token_cost=1.0)
        )
        anthropic = manager.get_tracker(
            "anthropic", CostTrackerConfig(provider="anthropic", input_token_cost=2.0)
        )
        assert manager.get_tracker("openai") is openai

        await openai.track_usage(usage(1_000_000, 0))
        await anthropic.track_usage(usage(1_000_000, 0))
        assert manager.get_total_cost() == pytest.approx(3.0)

        rows = manager.export_all_data("csv").splitlines()
        assert rows[0].startswith("provider,timestamp")
        assert len(rows) == 3

        await manager.reset_all()
        assert manager.get_total_cost() == 0
