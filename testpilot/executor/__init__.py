"""
Test Orchestration Engine for testpilot.

This module provides the result cache, retry policy, worker pool and
orchestrator used to run test units across attached devices in parallel.
"""

from testpilot.executor.cache import (
    CacheBackend,
    CacheEntry,
    CachePayload,
    DataPayload,
    MemoryCacheBackend,
    OutcomePayload,
    ResultCache,
    SqliteCacheBackend,
)
from testpilot.executor.errors import (
    AttemptTimeoutError,
    CacheEntryError,
    CacheError,
    FatalRunnerError,
    NoWorkersError,
    OrchestrationError,
    RunnerError,
    TransientRunnerError,
    WorkerPoolError,
)
from testpilot.executor.executor import Orchestrator, execute_tests
from testpilot.executor.pool import WorkerPool
from testpilot.executor.retry import RETRIABLE_PATTERNS, RetryPolicy, error_kind_for
from testpilot.executor.runner import FunctionRunner, TestRunner, as_test_runner
from testpilot.executor.types import (
    AggregateReport,
    CacheStats,
    ErrorKind,
    ExecutionOutcome,
    OutcomeStatus,
    PoolConfig,
    ProgressStatus,
    RetryClass,
    RetryConfig,
    RetryState,
    TestUnit,
    UnitState,
    WorkerStats,
    compute_content_hash,
)
from testpilot.executor.worker import DeviceWorker, ExecutionContext

__all__ = [
    # Cache
    "CacheBackend",
    "CacheEntry",
    "CachePayload",
    "DataPayload",
    "MemoryCacheBackend",
    "OutcomePayload",
    "ResultCache",
    "SqliteCacheBackend",
    # Retry
    "RETRIABLE_PATTERNS",
    "RetryPolicy",
    "error_kind_for",
    # Runner
    "FunctionRunner",
    "TestRunner",
    "as_test_runner",
    # Worker
    "DeviceWorker",
    "ExecutionContext",
    # Pool
    "WorkerPool",
    # Orchestrator
    "Orchestrator",
    "execute_tests",
    # Types
    "AggregateReport",
    "CacheStats",
    "ErrorKind",
    "ExecutionOutcome",
    "OutcomeStatus",
    "PoolConfig",
    "ProgressStatus",
    "RetryClass",
    "RetryConfig",
    "RetryState",
    "TestUnit",
    "UnitState",
    "WorkerStats",
    "compute_content_hash",
    # Errors
    "OrchestrationError",
    "NoWorkersError",
    "WorkerPoolError",
    "CacheError",
    "CacheEntryError",
    "RunnerError",
    "TransientRunnerError",
    "FatalRunnerError",
    "AttemptTimeoutError",
]
