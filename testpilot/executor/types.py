"""
Type definitions for the Test Orchestration Engine.

Contains enums, dataclasses, and type definitions used throughout the executor module.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class OutcomeStatus(str, Enum):
    """Terminal status of a unit within one orchestration run."""
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"   # Left in the queue when the pool was cancelled


class ErrorKind(str, Enum):
    """Typed failure tag set at the runner boundary."""
    TRANSIENT = "transient"
    FATAL = "fatal"


class RetryClass(str, Enum):
    """Retry classification of a failure."""
    RETRIABLE = "retriable"
    FATAL = "fatal"


class UnitState(str, Enum):
    """Attempt state machine for a single in-flight unit."""
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"        # Terminal
    FAILED = "failed"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"  # Terminal


class ProgressStatus(str, Enum):
    """Status reported to progress callbacks."""
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


def compute_content_hash(data: Union[bytes, str]) -> str:
    """Return the SHA-256 hex digest used as a unit's content hash."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class TestUnit:
    """One schedulable test, identified by path and content hash."""
    __test__ = False  # Not a pytest test class

    path: str
    content_hash: str
    estimated_duration_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("path must be non-empty")
        if not self.content_hash:
            raise ValueError(f"content_hash must be non-empty for {self.path}")

    @property
    def key(self) -> str:
        """Cache key of the unit."""
        return self.path

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs: Any) -> "TestUnit":
        """
        Build a unit from a test file, hashing its current content.

        Args:
            path: Path to the test file.
            **kwargs: Extra fields forwarded to the constructor.

        Returns:
            TestUnit whose content_hash is the SHA-256 of the file bytes.
        """
        file_path = Path(path)
        return cls(
            path=str(file_path),
            content_hash=compute_content_hash(file_path.read_bytes()),
            **kwargs,
        )


@dataclass(frozen=True)
class ExecutionOutcome:
    """Final outcome of a unit for one run (the last attempt)."""
    unit: TestUnit
    worker_id: str
    passed: bool
    duration_ms: int
    timestamp: datetime = field(default_factory=datetime.now)
    error_message: Optional[str] = None
    attempt: int = 1
    error_kind: Optional[ErrorKind] = None
    cached: bool = False
    skipped: bool = False

    @property
    def status(self) -> OutcomeStatus:
        if self.skipped:
            return OutcomeStatus.SKIPPED
        return OutcomeStatus.PASSED if self.passed else OutcomeStatus.FAILED

    @classmethod
    def success(
        cls, unit: TestUnit, worker_id: str, duration_ms: int = 0, **kwargs: Any
    ) -> "ExecutionOutcome":
        return cls(unit=unit, worker_id=worker_id, passed=True,
                   duration_ms=duration_ms, **kwargs)

    @classmethod
    def failure(
        cls,
        unit: TestUnit,
        worker_id: str,
        error_message: str,
        duration_ms: int = 0,
        **kwargs: Any,
    ) -> "ExecutionOutcome":
        return cls(unit=unit, worker_id=worker_id, passed=False,
                   duration_ms=duration_ms, error_message=error_message, **kwargs)

    @classmethod
    def skip(cls, unit: TestUnit) -> "ExecutionOutcome":
        """Outcome for a unit that was never started because of cancellation."""
        return cls(unit=unit, worker_id="", passed=False, duration_ms=0,
                   attempt=0, skipped=True, error_message="Skipped: run cancelled")


@dataclass
class WorkerStats:
    """Counters for a single worker slot, owned by that worker's loop."""
    worker_id: str
    started: int = 0
    passed: int = 0
    failed: int = 0
    total_duration_ms: int = 0

    @property
    def success_rate(self) -> float:
        return self.passed / self.started if self.started > 0 else 0.0


@dataclass
class RetryState:
    """Ephemeral retry bookkeeping for one in-flight unit."""
    attempt: int
    next_delay_ms: int


@dataclass
class CacheStats:
    """Snapshot of result cache counters."""
    size: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups > 0 else 0.0


@dataclass
class AggregateReport:
    """Consolidated report for one orchestration run."""
    outcomes: List[ExecutionOutcome]
    cache_hits: int
    wall_clock_ms: int
    sequential_ms: int
    worker_statistics: Dict[str, WorkerStats]
    start_time: datetime
    end_time: datetime

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def passed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.PASSED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.SKIPPED)

    @property
    def speedup(self) -> float:
        """Sequential time / wall-clock time."""
        if self.wall_clock_ms <= 0:
            return 1.0
        return self.sequential_ms / self.wall_clock_ms

    @property
    def success(self) -> bool:
        """Check if every unit passed."""
        return self.failed == 0 and self.skipped == 0

    @property
    def flaky_units(self) -> List[ExecutionOutcome]:
        """Units that passed only after one or more retries."""
        return [
            o for o in self.outcomes
            if o.passed and not o.cached and o.attempt > 1
        ]

    def summary(self) -> str:
        """Get a summary string of the report."""
        return (
            f"Tests: {self.passed}/{self.total} passed, "
            f"{self.failed} failed, {self.skipped} skipped, "
            f"{self.cache_hits} cached, "
            f"Duration: {self.wall_clock_ms}ms (speedup {self.speedup:.1f}x)"
        )


@dataclass
class RetryConfig:
    """Retry policy configuration."""
    max_retries: int = 3          # Upper bound on total attempts per unit
    initial_delay_ms: int = 5000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 120000

    def __post_init__(self) -> None:
        """Validate retry configuration."""
        if self.max_retries <= 0:
            raise ValueError(
                f"max_retries must be positive, got {self.max_retries}"
            )
        if self.initial_delay_ms < 0:
            raise ValueError(
                f"initial_delay_ms must not be negative, got {self.initial_delay_ms}"
            )
        if self.backoff_multiplier < 1.0:
            raise ValueError(
                f"backoff_multiplier must be at least 1.0, got {self.backoff_multiplier}"
            )
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must not be below "
                f"initial_delay_ms ({self.initial_delay_ms})"
            )


@dataclass
class PoolConfig:
    """Worker pool configuration."""
    attempt_timeout_ms: Optional[int] = None
    batch_pause_ms: int = 2000
    max_workers: Optional[int] = None

    def __post_init__(self) -> None:
        """Validate pool configuration."""
        if self.attempt_timeout_ms is not None and self.attempt_timeout_ms <= 0:
            raise ValueError(
                f"attempt_timeout_ms must be positive, got {self.attempt_timeout_ms}"
            )
        if self.batch_pause_ms < 0:
            raise ValueError(
                f"batch_pause_ms must not be negative, got {self.batch_pause_ms}"
            )
        if self.max_workers is not None and self.max_workers <= 0:
            raise ValueError(
                f"max_workers must be positive, got {self.max_workers}"
            )
