"""
Tolerant parsing of interaction log files.

A file is handed to an ordered list of pure strategies. Each strategy either
claims the content and returns the decoded objects, or returns None so the
next one is tried. Lines that fail to decode (including nesting too deep
for the decoder) are dropped and never counted.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .models import RawLogRecord

# e.g. "[DEBUG] 2025-01-01T10:00:00Z Calling MCP tool: search {...}"
_DEBUG_MARKER = re.compile(r"^\s*\[(?:DEBUG|debug|Debug)[^\]]*\]")

_decoder = json.JSONDecoder()

ParseStrategy = Callable[[str], Optional[List[Dict[str, Any]]]]


@dataclass(frozen=True)
class ParseResult:
    """Outcome of parsing one file: which strategy matched and what it produced."""
    strategy: Optional[str]
    records: Tuple[RawLogRecord, ...]

    @property
    def matched(self) -> bool:
        return self.strategy is not None


def _objects_only(items: Sequence[Any]) -> List[Dict[str, Any]]:
    return [item for item in items if isinstance(item, dict)]


def parse_json_document(text: str) -> Optional[List[Dict[str, Any]]]:
    """Whole file is one JSON array (or a single object)."""
    stripped = text.strip()
    if not stripped or stripped[0] not in "[{":
        return None
    try:
        decoded = json.loads(stripped)
    except (ValueError, RecursionError):
        return None
    if isinstance(decoded, dict):
        return [decoded]
    if isinstance(decoded, list):
        return _objects_only(decoded)
    return None


def parse_concatenated_objects(text: str) -> Optional[List[Dict[str, Any]]]:
    """Comma separated objects without the enclosing brackets."""
    stripped = text.strip().rstrip(",")
    if not stripped.startswith("{"):
        return None
    try:
        decoded = json.loads(f"[{stripped}]")
    except (ValueError, RecursionError):
        return None
    return _objects_only(decoded)


def _decode_debug_line(line: str) -> Optional[Dict[str, Any]]:
    """Recover the JSON payload embedded after a debug marker."""
    marker = _DEBUG_MARKER.match(line)
    if not marker:
        return None
    start = line.find("{", marker.end())
    if start < 0:
        return None
    try:
        decoded, _ = _decoder.raw_decode(line, start)
    except (ValueError, RecursionError):
        return None
    return decoded if isinstance(decoded, dict) else None


def parse_json_lines(text: str) -> Optional[List[Dict[str, Any]]]:
    """One JSON object per line; debug-marker lines carry their JSON inline."""
    objects: List[Dict[str, Any]] = []
    seen_content = False
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        seen_content = True
        try:
            decoded = json.loads(line)
        except (ValueError, RecursionError):
            decoded = _decode_debug_line(line)
        if isinstance(decoded, dict):
            objects.append(decoded)
    if seen_content and not objects:
        return None
    return objects


DEFAULT_STRATEGIES: Tuple[Tuple[str, ParseStrategy], ...] = (
    ("json_document", parse_json_document),
    ("concatenated_objects", parse_concatenated_objects),
    ("json_lines", parse_json_lines),
)


def parse_log_text(
    text: str,
    strategies: Sequence[Tuple[str, ParseStrategy]] = DEFAULT_STRATEGIES,
) -> ParseResult:
    """Run the strategies in order and keep the first that claims the text."""
    for name, strategy in strategies:
        objects = strategy(text)
        if objects is not None:
            return ParseResult(
                strategy=name,
                records=tuple(RawLogRecord.from_dict(obj) for obj in objects),
            )
    return ParseResult(strategy=None, records=())


def parse_log_bytes(
    data: bytes,
    strategies: Sequence[Tuple[str, ParseStrategy]] = DEFAULT_STRATEGIES,
) -> ParseResult:
    """Decode raw file bytes (invalid UTF-8 is replaced) and parse them."""
    return parse_log_text(data.decode("utf-8", errors="replace"), strategies)
