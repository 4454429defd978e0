"""
testpilot - cross-device test orchestration

Decides which test units must run versus reuse a cached result, spreads the
remaining units across attached device workers, retries transient failures
with backoff and aggregates everything into one report.
"""

from .executor import (
    AggregateReport,
    ExecutionOutcome,
    Orchestrator,
    PoolConfig,
    ResultCache,
    RetryConfig,
    RetryPolicy,
    SqliteCacheBackend,
    TestUnit,
    WorkerPool,
    execute_tests,
)

__version__ = "0.1.0"

__all__ = [
    # Core classes
    "Orchestrator",
    "WorkerPool",
    "ResultCache",
    "SqliteCacheBackend",
    "RetryPolicy",
    # Data
    "TestUnit",
    "ExecutionOutcome",
    "AggregateReport",
    # Configuration
    "PoolConfig",
    "RetryConfig",
    "execute_tests",
]
