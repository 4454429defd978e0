"""
Error definitions for the Test Orchestration Engine.

Contains custom exception classes for pool configuration, cache and
test runner errors.
"""

from typing import Optional


class OrchestrationError(Exception):
    """Base exception for orchestration errors."""
    pass


class NoWorkersError(OrchestrationError):
    """Raised when a run is requested with an empty worker list."""

    def __init__(self, unit_count: int = 0):
        self.unit_count = unit_count
        super().__init__(
            f"No workers available to execute {unit_count} unit(s)"
        )


class WorkerPoolError(OrchestrationError):
    """Raised when the shared work queue ends up in an inconsistent state."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(f"Worker pool failure: {message}")


class CacheError(Exception):
    """Base exception for result cache errors."""
    pass


class CacheEntryError(CacheError):
    """Raised when a malformed entry is written to the cache."""

    def __init__(self, field_name: str, message: str):
        self.field_name = field_name
        super().__init__(f"Invalid cache entry ({field_name}): {message}")


class RunnerError(Exception):
    """Base exception a test runner may raise to tag its failure."""

    def __init__(self, message: str, worker_id: Optional[str] = None):
        self.worker_id = worker_id
        super().__init__(message)


class TransientRunnerError(RunnerError):
    """Raised by a runner for conditions worth retrying (device busy, network)."""
    pass


class FatalRunnerError(RunnerError):
    """Raised by a runner for failures that must not be retried."""
    pass


class AttemptTimeoutError(TransientRunnerError):
    """Raised when an attempt exceeds the pool's attempt timeout."""

    def __init__(self, timeout_ms: int, worker_id: Optional[str] = None):
        self.timeout_ms = timeout_ms
        super().__init__(f"Attempt timed out after {timeout_ms}ms", worker_id)
