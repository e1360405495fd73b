"""Usage and cost accounting per provider.

The tracker keeps an append-only ledger of ``RequestRecord`` entries and
derives every statistic from it. When a provider reports an authoritative
cost for a call, that value is recorded as the call's total and the local
price table is not consulted.
"""

from __future__ import annotations

import asyncio
import csv
import dataclasses
import io
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from .exceptions import ConfigurationError, InvalidRequestError
from .unified_models import TokenUsage, create_token_usage, utcnow

logger = logging.getLogger(__name__)

TOKENS_PER_PRICE_UNIT = 1_000_000
MAX_RECORDS = 10_000
MAX_RECORD_AGE = timedelta(days=90)

CSV_COLUMNS = [
    "timestamp",
    "inputTokens",
    "outputTokens",
    "totalTokens",
    "cost",
    "model",
    "requestId",
]


class AlertType(Enum):
    DAILY = "daily"
    MONTHLY = "monthly"
    TOTAL = "total"


@dataclass
class CostTrackerConfig:
    """Pricing for one provider. Costs are per 1M tokens."""

    provider: str
    input_token_cost: float = 0.0
    output_token_cost: float = 0.0
    cache_read_cost: float = 0.0
    cache_write_cost: float = 0.0
    currency: str = "USD"
    tracking_enabled: bool = True
    # Per-model (input, output) rates overriding the provider defaults
    model_rates: dict[str, tuple[float, float]] = field(default_factory=dict)

    def rates_for(self, model: str | None) -> tuple[float, float]:
        if model and model in self.model_rates:
            return self.model_rates[model]
        return self.input_token_cost, self.output_token_cost


@dataclass
class CostBreakdown:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_tokens_read: int = 0
    cache_tokens_write: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0
    cache_cost: float = 0.0
    total_cost: float = 0.0
    currency: str = "USD"


@dataclass(frozen=True)
class RequestRecord:
    """Ledger entry for one call. Never mutated after creation."""

    timestamp: datetime
    tokens: TokenUsage
    cost: float
    model: str | None = None
    request_id: str | None = None
    input_cost: float = 0.0
    output_cost: float = 0.0
    cache_cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "tokens": self.tokens.to_dict(),
            "cost": self.cost,
            "model": self.model,
            "request_id": self.request_id,
            "input_cost": self.input_cost,
            "output_cost": self.output_cost,
            "cache_cost": self.cache_cost,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestRecord:
        return cls(
            timestamp=_parse_timestamp(data["timestamp"]),
            tokens=TokenUsage.from_dict(data.get("tokens", {})),
            cost=float(data.get("cost", 0.0)),
            model=data.get("model") or None,
            request_id=data.get("request_id") or None,
            input_cost=float(data.get("input_cost", 0.0)),
            output_cost=float(data.get("output_cost", 0.0)),
            cache_cost=float(data.get("cache_cost", 0.0)),
        )


@dataclass
class DailyStats:
    date: str  # YYYY-MM-DD, UTC
    requests: int
    tokens: int
    cost: float


@dataclass
class TrackingPeriod:
    start: datetime
    end: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()


@dataclass
class UsageStats:
    """Aggregated view over (a filtered slice of) the ledger."""

    provider: str
    total_requests: int
    total_tokens: int
    total_input_tokens: int
    total_output_tokens: int
    total_cache_tokens_read: int
    total_cache_tokens_write: int
    total_cost: float
    average_cost_per_request: float
    average_tokens_per_request: float
    cost_breakdown: dict[str, float]
    currency: str
    tracking_period: TrackingPeriod
    daily_stats: list[DailyStats] = field(default_factory=list)
    request_history: list[RequestRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "total_requests": self.total_requests,
            "total_tokens": self.total_tokens,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_cache_tokens_read": self.total_cache_tokens_read,
            "total_cache_tokens_write": self.total_cache_tokens_write,
            "total_cost": self.total_cost,
            "average_cost_per_request": self.average_cost_per_request,
            "average_tokens_per_request": self.average_tokens_per_request,
            "cost_breakdown": dict(self.cost_breakdown),
            "currency": self.currency,
            "tracking_period": {
                "start": self.tracking_period.start.isoformat(),
                "end": self.tracking_period.end.isoformat(),
                "duration_seconds": self.tracking_period.duration_seconds,
            },
            "daily_stats": [dataclasses.asdict(day) for day in self.daily_stats],
            "request_history": [record.to_dict() for record in self.request_history],
        }


@dataclass
class CostAlert:
    type: AlertType
    threshold: float
    current: float = 0.0
    currency: str = "USD"
    triggered: bool = False
    message: str = ""


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_timestamp(value: str) -> datetime:
    return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


class CostTracker:
    """Records token usage per call and aggregates cost statistics."""

    def __init__(
        self,
        config: CostTrackerConfig,
        on_alert: Callable[[CostAlert], None] | None = None,
    ):
        """Initialize cost tracker.

        Args:
            config: Provider pricing and currency
            on_alert: Called once each time an alert threshold is crossed
        """
        self.config = config
        self.on_alert = on_alert
        self._records: list[RequestRecord] = []
        self._alerts: dict[AlertType, CostAlert] = {}
        self._start_time = utcnow()
        self._lock: asyncio.Lock | None = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def track_usage(
        self,
        usage: TokenUsage,
        cost: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CostBreakdown:
        """Append one ledger record.

        Args:
            usage: Tokens consumed by the call
            cost: Provider-reported cost; when given it is the recorded total
            metadata: Optional ``model`` and ``request_id``

        Returns:
            The cost breakdown that was recorded
        """
        if not self.config.tracking_enabled:
            return CostBreakdown(currency=self.config.currency)

        metadata = metadata or {}
        breakdown = self.calculate_cost(usage, cost, model=metadata.get("model"))
        record = RequestRecord(
            timestamp=utcnow(),
            tokens=usage,
            cost=breakdown.total_cost,
            model=metadata.get("model"),
            request_id=metadata.get("request_id"),
            input_cost=breakdown.input_cost,
            output_cost=breakdown.output_cost,
            cache_cost=breakdown.cache_cost,
        )

        async with self._get_lock():
            self._records.append(record)
            self._check_alerts()
            self._cleanup()

        logger.debug(
            f"Tracked {usage.total_tokens} tokens "
            f"({breakdown.total_cost:.6f} {self.config.currency}) "
            f"for {self.config.provider}"
        )
        return breakdown

    def calculate_cost(
        self,
        usage: TokenUsage,
        provided_cost: float | None = None,
        model: str | None = None,
    ) -> CostBreakdown:
        """Price ``usage`` with the configured rates for ``model``.

        A ``provided_cost`` becomes the total as-is, with zero components.
        """
        cache_read = usage.cache_tokens_read or 0
        cache_write = usage.cache_tokens_write or 0

        if provided_cost is not None:
            return CostBreakdown(
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cache_tokens_read=cache_read,
                cache_tokens_write=cache_write,
                total_cost=provided_cost,
                currency=self.config.currency,
            )

        input_rate, output_rate = self.config.rates_for(model)
        input_cost = usage.input_tokens / TOKENS_PER_PRICE_UNIT * input_rate
        output_cost = usage.output_tokens / TOKENS_PER_PRICE_UNIT * output_rate
        cache_cost = (
            cache_read / TOKENS_PER_PRICE_UNIT * self.config.cache_read_cost
            + cache_write / TOKENS_PER_PRICE_UNIT * self.config.cache_write_cost
        )

        return CostBreakdown(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_tokens_read=cache_read,
            cache_tokens_write=cache_write,
            input_cost=input_cost,
            output_cost=output_cost,
            cache_cost=cache_cost,
            total_cost=input_cost + output_cost + cache_cost,
            currency=self.config.currency,
        )

    def estimate_cost(self, usage: TokenUsage, model: str | None = None) -> CostBreakdown:
        """Price a planned request without recording it."""
        return self.calculate_cost(usage, model=model)

    def get_stats(self) -> UsageStats:
        """Aggregate statistics over the whole ledger."""
        return self._build_stats(list(self._records), self._start_time, utcnow())

    def get_stats_for_period(self, start: datetime, end: datetime) -> UsageStats:
        """Aggregate records with ``start <= timestamp <= end``.

        Naive bounds are read as UTC.
        """
        start, end = _as_utc(start), _as_utc(end)
        records = [r for r in self._records if start <= r.timestamp <= end]
        return self._build_stats(records, start, end)

    def get_today_stats(self) -> UsageStats:
        start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1) - timedelta(microseconds=1)
        return self.get_stats_for_period(start, end)

    def get_month_stats(self) -> UsageStats:
        now = utcnow()
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            next_month = start.replace(year=start.year + 1, month=1)
        else:
            next_month = start.replace(month=start.month + 1)
        return self.get_stats_for_period(start, next_month - timedelta(microseconds=1))

    def _build_stats(
        self, records: list[RequestRecord], start: datetime, end: datetime
    ) -> UsageStats:
        total_requests = len(records)
        total_tokens = sum(r.tokens.total_tokens or 0 for r in records)
        total_cost = sum(r.cost for r in records)

        daily: dict[str, DailyStats] = {}
        for record in records:
            key = record.timestamp.astimezone(timezone.utc).date().isoformat()
            day = daily.setdefault(key, DailyStats(date=key, requests=0, tokens=0, cost=0.0))
            day.requests += 1
            day.tokens += record.tokens.total_tokens or 0
            day.cost += record.cost

        return UsageStats(
            provider=self.config.provider,
            total_requests=total_requests,
            total_tokens=total_tokens,
            total_input_tokens=sum(r.tokens.input_tokens for r in records),
            total_output_tokens=sum(r.tokens.output_tokens for r in records),
            total_cache_tokens_read=sum(r.tokens.cache_tokens_read for r in records),
            total_cache_tokens_write=sum(r.tokens.cache_tokens_write for r in records),
            total_cost=total_cost,
            average_cost_per_request=total_cost / total_requests if total_requests else 0.0,
            average_tokens_per_request=(
                total_tokens / total_requests if total_requests else 0.0
            ),
            cost_breakdown={
                "input": sum(r.input_cost for r in records),
                "output": sum(r.output_cost for r in records),
                "cache": sum(r.cache_cost for r in records),
            },
            currency=self.config.currency,
            tracking_period=TrackingPeriod(start=start, end=end),
            daily_stats=[daily[key] for key in sorted(daily)],
            request_history=sorted(records, key=lambda r: r.timestamp, reverse=True),
        )

    def set_alert(self, alert_type: AlertType | str, threshold: float) -> None:
        """Set (or re-arm) a cost threshold alert."""
        alert_type = AlertType(alert_type)
        if threshold < 0:
            raise InvalidRequestError("Alert threshold must not be negative")

        existing = self._alerts.get(alert_type)
        if existing:
            existing.threshold = threshold
            existing.triggered = False
            existing.message = ""
        else:
            self._alerts[alert_type] = CostAlert(
                type=alert_type, threshold=threshold, currency=self.config.currency
            )

    def get_alerts(self) -> list[CostAlert]:
        return [dataclasses.replace(alert) for alert in self._alerts.values()]

    def _check_alerts(self) -> None:
        for alert in self._alerts.values():
            if alert.type == AlertType.DAILY:
                current = self.get_today_stats().total_cost
            elif alert.type == AlertType.MONTHLY:
                current = self.get_month_stats().total_cost
            else:
                current = sum(r.cost for r in self._records)

            alert.current = current
            if current >= alert.threshold and not alert.triggered:
                alert.triggered = True
                alert.message = (
                    f"{alert.type.value} cost threshold exceeded: "
                    f"{current:.4f} {alert.currency} >= {alert.threshold} {alert.currency}"
                )
                logger.warning(f"Cost alert for {self.config.provider}: {alert.message}")
                if self.on_alert:
                    self.on_alert(dataclasses.replace(alert))

    def _cleanup(self) -> None:
        """Prune records older than 90 days, then keep the newest 10,000."""
        cutoff = utcnow() - MAX_RECORD_AGE
        records = [r for r in self._records if r.timestamp > cutoff]
        if len(records) > MAX_RECORDS:
            records.sort(key=lambda r: r.timestamp)
            records = records[-MAX_RECORDS:]
        self._records = records

    def export_data(self, format: str = "json") -> str:
        """Export the ledger as JSON (full stats) or CSV (one row per record)."""
        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(CSV_COLUMNS)
            for record in self._records:
                writer.writerow(self._csv_row(record))
            return buffer.getvalue().rstrip("\n")
        if format == "json":
            return json.dumps(self.get_stats().to_dict(), indent=2)
        raise InvalidRequestError(f"Unsupported export format: {format}")

    @staticmethod
    def _csv_row(record: RequestRecord) -> list[str]:
        return [
            record.timestamp.isoformat(),
            str(record.tokens.input_tokens),
            str(record.tokens.output_tokens),
            str(record.tokens.total_tokens),
            f"{record.cost:.6f}",
            record.model or "",
            record.request_id or "",
        ]

    async def import_data(self, data: str, format: str = "json") -> int:
        """Append records from a previous export.

        Returns:
            Number of records read from ``data``
        """
        if format == "csv":
            records = [
                RequestRecord(
                    timestamp=_parse_timestamp(row["timestamp"]),
                    tokens=create_token_usage(
                        int(row["inputTokens"]),
                        int(row["outputTokens"]),
                        int(row["totalTokens"]),
                    ),
                    cost=float(row["cost"]),
                    model=row.get("model") or None,
                    request_id=row.get("requestId") or None,
                )
                for row in csv.DictReader(io.StringIO(data.strip()))
            ]
        elif format == "json":
            payload = json.loads(data)
            history = payload.get("request_history") if isinstance(payload, dict) else None
            if not isinstance(history, list) or not all(
                isinstance(item, dict) for item in history
            ):
                raise InvalidRequestError(
                    "JSON import expects a single tracker export with a "
                    "'request_history' list"
                )
            records = [RequestRecord.from_dict(item) for item in history]
        else:
            raise InvalidRequestError(f"Unsupported import format: {format}")

        async with self._get_lock():
            self._records.extend(records)
            self._records.sort(key=lambda r: r.timestamp)
            self._cleanup()

        logger.info(f"Imported {len(records)} usage records for {self.config.provider}")
        return len(records)

    async def reset(self) -> None:
        """Clear the ledger and re-arm every alert."""
        async with self._get_lock():
            self._records = []
            self._start_time = utcnow()
            for alert in self._alerts.values():
                alert.triggered = False
                alert.current = 0.0
                alert.message = ""

    def update_config(self, **changes: Any) -> None:
        """Update pricing fields, e.g. ``update_config(input_token_cost=0.5)``."""
        self.config = dataclasses.replace(self.config, **changes)


class CostTrackerManager:
    """Owns one tracker per provider identifier."""

    def __init__(self) -> None:
        self._trackers: dict[str, CostTracker] = {}

    def get_tracker(
        self, provider_id: str, config: CostTrackerConfig | None = None
    ) -> CostTracker:
        """Get the tracker for ``provider_id``, creating it from ``config``.

        Raises:
            ConfigurationError: If the tracker does not exist and no config is given
        """
        if provider_id not in self._trackers:
            if config is None:
                raise ConfigurationError(
                    f"No cost tracker config provided for provider: {provider_id}",
                    provider=provider_id,
                )
            self._trackers[provider_id] = CostTracker(config)
        return self._trackers[provider_id]

    def add_tracker(self, provider_id: str, tracker: CostTracker) -> None:
        self._trackers[provider_id] = tracker

    def remove_tracker(self, provider_id: str) -> None:
        self._trackers.pop(provider_id, None)

    def get_all_stats(self) -> dict[str, UsageStats]:
        return {
            provider_id: tracker.get_stats()
            for provider_id, tracker in self._trackers.items()
        }

    def get_total_cost(self) -> float:
        return sum(stats.total_cost for stats in self.get_all_stats().values())

    def export_all_data(self, format: str = "json") -> str:
        all_stats = self.get_all_stats()
        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(["provider", *CSV_COLUMNS])
            for provider_id, stats in all_stats.items():
                for record in stats.request_history:
                    writer.writerow([provider_id, *CostTracker._csv_row(record)])
            return buffer.getvalue().rstrip("\n")
        if format == "json":
            return json.dumps(
                {provider_id: stats.to_dict() for provider_id, stats in all_stats.items()},
                indent=2,
            )
        raise InvalidRequestError(f"Unsupported export format: {format}")

    async def reset_all(self) -> None:
        for tracker in self._trackers.values():
            await tracker.reset()
