"""
Data models for the log storage layer.

Defines parsed log records and the flattened per-record usage rows.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from usage_dashboard.core.token_counter import TokenUsage, UsageMetrics


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken as UTC. Returns None for anything unparsable.
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a UTC datetime the way the logs write it (millisecond ``Z``)."""
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class RawLogRecord:
    """One parsed line of an interaction log.

    Records are immutable once parsed. Fields missing from the source line
    are None; a record without usage still counts as a message.
    """
    timestamp: Optional[datetime] = None
    session_id: Optional[str] = None
    model: Optional[str] = None
    usage: Optional[TokenUsage] = None
    debug: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawLogRecord":
        """Build a record from one decoded JSON object.

        Usage and model live under ``message`` in the on-disk layout; a
        top-level ``usage``/``model`` is accepted as well.
        """
        message = data.get("message")
        container = message if isinstance(message, dict) else {}

        usage_data = container.get("usage", data.get("usage"))
        model = container.get("model", data.get("model"))
        session_id = data.get("sessionId")
        debug = data.get("debug")

        return cls(
            timestamp=parse_timestamp(data.get("timestamp")),
            session_id=session_id if isinstance(session_id, str) and session_id else None,
            model=model if isinstance(model, str) and model else None,
            usage=TokenUsage.from_dict(usage_data) if isinstance(usage_data, dict) else None,
            debug=debug if isinstance(debug, str) else None,
        )

    @property
    def has_usage(self) -> bool:
        return self.usage is not None


@dataclass(frozen=True)
class DetailedUsageEntry:
    """Flattened per-record usage row, kept for one aggregation run only."""
    timestamp: datetime
    session_id: Optional[str]
    model: str
    metrics: UsageMetrics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "sessionId": self.session_id,
            "model": self.model,
            "inputTokens": self.metrics.input_tokens,
            "outputTokens": self.metrics.output_tokens,
            "cachedTokens": self.metrics.cached_tokens,
            "totalTokens": self.metrics.total_tokens,
            "cost": self.metrics.cost,
            "newInputTokens": self.metrics.new_input_tokens,
            "cacheCreationTokens": self.metrics.cache_creation_tokens,
            "cacheReadTokens": self.metrics.cache_read_tokens,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["DetailedUsageEntry"]:
        """Rebuild an entry from a contract row; None if the timestamp is bad."""
        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None:
            return None
        metrics = UsageMetrics(
            new_input_tokens=int(data.get("newInputTokens") or data.get("inputTokens") or 0),
            cache_creation_tokens=int(data.get("cacheCreationTokens") or 0),
            cache_read_tokens=int(data.get("cacheReadTokens") or 0),
            output_tokens=int(data.get("outputTokens") or 0),
            cost=float(data.get("cost") or 0),
        )
        return cls(
            timestamp=timestamp,
            session_id=data.get("sessionId") or None,
            model=data.get("model") or "unknown",
            metrics=metrics,
        )


@dataclass(frozen=True)
class ProjectScan:
    """Everything read from one project directory in a single ingestion."""
    name: str
    path: str
    records: tuple
    message_count: int
    last_activity: Optional[datetime]
    error: Optional[str] = None
