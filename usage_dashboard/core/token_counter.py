"""
Token counting and usage tracking.

Normalizes the usage block of a log record into exact token categories.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


def _as_token_count(value: Any) -> int:
    """Coerce a raw usage field to a non-negative int, defaulting to 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float) and value >= 0:
        return int(value)
    return 0


@dataclass(frozen=True)
class TokenUsage:
    """Raw token usage as reported in a log record.

    Contains exact token counts without estimation. ``input_tokens`` excludes
    cached tokens; cache writes and cache reads are reported separately.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TokenUsage":
        """Build usage from a decoded ``usage`` object.

        Missing, null or non-numeric fields count as zero; they are not errors.
        """
        if not isinstance(data, dict):
            return cls()
        return cls(
            input_tokens=_as_token_count(data.get("input_tokens")),
            output_tokens=_as_token_count(data.get("output_tokens")),
            cache_creation_input_tokens=_as_token_count(data.get("cache_creation_input_tokens")),
            cache_read_input_tokens=_as_token_count(data.get("cache_read_input_tokens")),
        )

    @property
    def total_tokens(self) -> int:
        """Total tokens across all four categories."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
        )


@dataclass(frozen=True)
class UsageMetrics:
    """Per-record token breakdown and full-precision cost."""
    new_input_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    output_tokens: int
    cost: float

    @property
    def input_tokens(self) -> int:
        return self.new_input_tokens

    @property
    def cached_tokens(self) -> int:
        return self.cache_creation_tokens + self.cache_read_tokens

    @property
    def total_tokens(self) -> int:
        """Invariant: new input + cache creation + cache read + output."""
        return (
            self.new_input_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
            + self.output_tokens
        )
