"""
Hybrid execution of the aggregation pass.

Two interchangeable strategies produce the same report: an external
high-performance processor run as a subprocess, and the in-process
ingest/price/aggregate pipeline. The coordinator tries the external one when
it is configured, validates what it returns, and falls back to the
in-process pipeline on any failure.
"""

import asyncio
import json
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from usage_dashboard.storage.repository import LogRepository, ProjectsDirectoryError

from .aggregation import aggregate_projects
from .errors import ErrorCode
from .pricing import PRICING_TABLE, PricingTable, format_cost

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_OUTPUT_BYTES = 50 * 1024 * 1024

_POSIX = os.name == "posix"

_READ_CHUNK = 64 * 1024
_STDERR_LIMIT = 64 * 1024

_USAGE_FIELDS = (
    "inputTokens", "outputTokens", "cachedTokens", "totalTokens", "cost",
    "sessions", "newInputTokens", "cacheCreationTokens", "cacheReadTokens",
)

# Field order of every row in the report contract
REPORT_FIELDS: Dict[str, Tuple[str, ...]] = {
    "dailyUsage": ("date",) + _USAGE_FIELDS,
    "monthlyUsage": ("month",) + _USAGE_FIELDS + ("messages",),
    "modelUsage": ("model",) + _USAGE_FIELDS + ("messages",),
    "projects": ("name", "path", "totalTokens", "totalCost", "messageCount", "lastActivity"),
    "detailedUsage": (
        "timestamp", "sessionId", "model", "inputTokens", "outputTokens", "cachedTokens",
        "totalTokens", "cost", "newInputTokens", "cacheCreationTokens", "cacheReadTokens",
    ),
}

_STRING_FIELDS = {"date", "month", "model", "name", "path", "timestamp"}
_OPTIONAL_FIELDS = {"lastActivity", "sessionId"}
_MONEY_FIELDS = {"cost", "totalCost"}


class ExecutionState(Enum):
    """Where a single coordinator run currently stands."""
    NOT_ATTEMPTED = "not_attempted"
    EXTERNAL_RUNNING = "external_running"
    EXTERNAL_SUCCEEDED = "external_succeeded"
    EXTERNAL_FAILED = "external_failed"
    FALLBACK_RUNNING = "fallback_running"
    FALLBACK_SUCCEEDED = "fallback_succeeded"
    FALLBACK_FAILED = "fallback_failed"


@dataclass(frozen=True)
class StrategyOutcome:
    """Tagged result of one strategy attempt: a report or an error, never both."""
    strategy: str
    report: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    code: Optional[ErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.report is not None

    @classmethod
    def failure(cls, strategy: str, error: str, code: ErrorCode = ErrorCode.PROJECT_PROCESSING_ERROR) -> "StrategyOutcome":
        return cls(strategy=strategy, error=error, code=code)


@dataclass(frozen=True)
class ExecutionResult:
    """What one coordinator run did and what it produced."""
    state: ExecutionState
    outcome: StrategyOutcome
    transitions: Tuple[ExecutionState, ...]
    external_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome.ok

    @property
    def report(self) -> Optional[Dict[str, Any]]:
        return self.outcome.report


def _check_value(section: str, name: str, value: Any) -> Optional[str]:
    if value is None:
        return None if name in _OPTIONAL_FIELDS else f"{section}.{name} is null"
    if name in _STRING_FIELDS or name in _OPTIONAL_FIELDS:
        return None if isinstance(value, str) else f"{section}.{name} must be a string"
    if name in _MONEY_FIELDS:
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            return f"{section}.{name} must be a number or numeric string"
        try:
            float(value)
        except ValueError:
            return f"{section}.{name} is not numeric"
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        return f"{section}.{name} must be an integer"
    return None


def validate_report_shape(document: Any) -> Optional[str]:
    """Check a decoded document against the report contract.

    Returns:
        None if the document is valid, otherwise a description of the
        first problem found
    """
    if not isinstance(document, dict):
        return "report must be a JSON object"
    for section, fields in REPORT_FIELDS.items():
        rows = document.get(section)
        if not isinstance(rows, list):
            return f"{section} must be a list"
        for index, row in enumerate(rows):
            if not isinstance(row, dict):
                return f"{section}[{index}] must be an object"
            for name in fields:
                if name not in row:
                    if name in _OPTIONAL_FIELDS:
                        continue
                    return f"{section}[{index}] is missing {name}"
                problem = _check_value(f"{section}[{index}]", name, row[name])
                if problem:
                    return problem
    total_sessions = document.get("totalSessions")
    if isinstance(total_sessions, bool) or not isinstance(total_sessions, int):
        return "totalSessions must be an integer"
    return None


def normalize_report(document: Dict[str, Any]) -> Dict[str, Any]:
    """Project a validated document onto exactly the contract fields.

    Aggregate costs are rendered as fixed-precision strings and detailed
    costs as floats, whichever form the producer used.
    """
    normalized: Dict[str, Any] = {}
    for section, fields in REPORT_FIELDS.items():
        rows = []
        for row in document[section]:
            clean = {name: row.get(name) for name in fields}
            for money in _MONEY_FIELDS.intersection(fields):
                if section == "detailedUsage":
                    clean[money] = float(clean[money])
                else:
                    clean[money] = format_cost(float(clean[money]))
            rows.append(clean)
        normalized[section] = rows
    normalized["totalSessions"] = document["totalSessions"]
    return normalized


class ExternalProcessorStrategy:
    """Delegate the whole pass to an external executable.

    The executable receives the projects root as its only argument and must
    print one report document on stdout and exit 0.
    """

    name = "external"

    def __init__(
        self,
        executable: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ):
        self.executable = executable
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes

    def is_available(self) -> bool:
        return os.path.isfile(self.executable) and os.access(self.executable, os.X_OK)

    @staticmethod
    async def _drain(stream: asyncio.StreamReader, limit: int, stop_on_overflow: bool) -> Tuple[bytes, bool]:
        chunks: List[bytes] = []
        size = 0
        overflowed = False
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            size += len(chunk)
            if size > limit:
                overflowed = True
                if stop_on_overflow:
                    break
                continue
            chunks.append(chunk)
        return b"".join(chunks), overflowed

    async def _collect(self, process: asyncio.subprocess.Process) -> Tuple[bytes, bool, bytes]:
        stderr_task = asyncio.ensure_future(
            self._drain(process.stderr, _STDERR_LIMIT, stop_on_overflow=False)
        )
        try:
            stdout, overflowed = await self._drain(
                process.stdout, self.max_output_bytes, stop_on_overflow=True
            )
            if overflowed:
                await self._terminate(process)
                return stdout, True, b""
            stderr, _ = await stderr_task
            await process.wait()
            return stdout, False, stderr
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        # Children of the processor share its session and may hold the pipes
        if _POSIX:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass
        elif process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        self._kill(process)
        await process.wait()

    async def run(self, root: Path) -> StrategyOutcome:
        if not self.is_available():
            return StrategyOutcome.failure(self.name, f"processor not found: {self.executable}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                str(root),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except OSError as e:
            return StrategyOutcome.failure(self.name, f"could not start processor: {e}")

        try:
            stdout, overflowed, stderr = await asyncio.wait_for(self._collect(process), self.timeout)
        except asyncio.TimeoutError:
            await self._terminate(process)
            return StrategyOutcome.failure(self.name, f"processor timed out after {self.timeout:g}s")

        if overflowed:
            return StrategyOutcome.failure(
                self.name, f"processor output exceeded {self.max_output_bytes} bytes"
            )

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            return StrategyOutcome.failure(
                self.name, f"processor exited with status {process.returncode}: {detail}"
            )

        try:
            document = json.loads(stdout.decode("utf-8", errors="replace"))
        except (ValueError, RecursionError) as e:
            return StrategyOutcome.failure(self.name, f"processor output is not valid JSON: {e}")

        problem = validate_report_shape(document)
        if problem:
            return StrategyOutcome.failure(self.name, f"processor output rejected: {problem}")

        return StrategyOutcome(strategy=self.name, report=normalize_report(document))


class InProcessStrategy:
    """Ingest, price and aggregate inside this process."""

    name = "in_process"

    def __init__(self, table: PricingTable = PRICING_TABLE):
        self.table = table

    async def run(self, root: Path) -> StrategyOutcome:
        repository = LogRepository(str(root))
        try:
            scans = await repository.scan_all()
            report = aggregate_projects(scans, self.table)
        except ProjectsDirectoryError as e:
            return StrategyOutcome.failure(self.name, e.message, e.code)
        except Exception as e:
            logger.exception("Error processing project data")
            return StrategyOutcome.failure(self.name, f"Failed to process project data: {e}")

        return StrategyOutcome(strategy=self.name, report=report)


@dataclass
class _Run:
    transitions: List[ExecutionState] = field(default_factory=lambda: [ExecutionState.NOT_ATTEMPTED])

    def move(self, state: ExecutionState) -> None:
        self.transitions.append(state)

    @property
    def state(self) -> ExecutionState:
        return self.transitions[-1]


class HybridCoordinator:
    """Pick an execution path per request and guarantee one report shape.

    External failures of any kind are logged and absorbed; only a failure of
    the in-process fallback reaches the caller.
    """

    def __init__(
        self,
        fallback: InProcessStrategy,
        external: Optional[ExternalProcessorStrategy] = None,
    ):
        self.fallback = fallback
        self.external = external

    @staticmethod
    async def _root_usable(root: Path) -> bool:
        """A missing or unreadable root is left to the fallback to report."""
        try:
            await LogRepository(str(root)).list_projects()
        except ProjectsDirectoryError as e:
            logger.warning("Not running external processor: %s", e.message)
            return False
        return True

    async def run(self, root: Path) -> ExecutionResult:
        run = _Run()
        external_error = None
        started = time.perf_counter()

        if self.external is not None and await self._root_usable(root):
            run.move(ExecutionState.EXTERNAL_RUNNING)
            try:
                outcome = await self.external.run(root)
            except Exception as e:
                logger.exception("External processor raised")
                outcome = StrategyOutcome.failure(self.external.name, f"processor error: {e!r}")
            if outcome.ok:
                run.move(ExecutionState.EXTERNAL_SUCCEEDED)
                logger.info("External processor finished in %.0fms", (time.perf_counter() - started) * 1000)
                return ExecutionResult(run.state, outcome, tuple(run.transitions))
            run.move(ExecutionState.EXTERNAL_FAILED)
            external_error = outcome.error
            logger.warning("External processor failed, falling back: %s", outcome.error)

        run.move(ExecutionState.FALLBACK_RUNNING)
        outcome = await self.fallback.run(root)
        if outcome.ok:
            run.move(ExecutionState.FALLBACK_SUCCEEDED)
            logger.info("In-process aggregation finished in %.0fms", (time.perf_counter() - started) * 1000)
        else:
            run.move(ExecutionState.FALLBACK_FAILED)
            logger.error("Aggregation failed [%s]: %s", outcome.code, outcome.error)
        return ExecutionResult(run.state, outcome, tuple(run.transitions), external_error)
