"""
Orchestrator.

Composes the result cache, the worker pool and the retry policy: filters the
unit list down to the units that actually need to run, executes them across
the device workers, writes passing results back to the cache and merges
everything into one report.
"""

import time
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union

from loguru import logger

from testpilot.executor.cache import CacheEntry, OutcomePayload, ResultCache
from testpilot.executor.errors import NoWorkersError
from testpilot.executor.pool import WorkerPool
from testpilot.executor.retry import RetryPolicy
from testpilot.executor.runner import RunnerFunc, TestRunner
from testpilot.executor.types import (
    AggregateReport,
    ExecutionOutcome,
    PoolConfig,
    TestUnit,
)
from testpilot.executor.worker import ProgressCallback


class Orchestrator:
    """
    Cache-aware test orchestration across device workers.

    The cache is read before the pool starts and written after it finishes,
    never concurrently with the run.

    One orchestrator drives one run at a time: a second ``execute`` started
    while units are still running raises WorkerPoolError. Use one
    orchestrator per concurrent run.

    Example:
        cache = ResultCache(SqliteCacheBackend())
        orchestrator = Orchestrator(cache, RetryPolicy.moderate())

        report = await orchestrator.execute(
            units, ["emulator-5554", "R58M123"], runner, cache_namespace="ui_tests"
        )
        print(report.summary())
    """

    def __init__(
        self,
        cache: ResultCache,
        retry_policy: Optional[RetryPolicy] = None,
        pool_config: Optional[PoolConfig] = None,
        load_balance: bool = False,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            cache: Result cache, owned by the caller.
            retry_policy: Retry policy for fresh executions.
            pool_config: Worker pool configuration.
            load_balance: Run longest units first, using durations recorded in the cache.
        """
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy()
        self.pool = WorkerPool(self.retry_policy, pool_config)
        self.load_balance = load_balance

    def partition(
        self, units: Sequence[TestUnit], cache_namespace: str
    ) -> "tuple[Dict[int, ExecutionOutcome], List[TestUnit]]":
        """
        Split units into cache hits and units that still need to run.

        Returns:
            Mapping of input index to cached outcome, and the pending units.
        """
        cached: Dict[int, ExecutionOutcome] = {}
        pending: List[TestUnit] = []

        for index, unit in enumerate(units):
            payload = self.cache.get(cache_namespace, unit.key, unit.content_hash)
            if isinstance(payload, OutcomePayload):
                cached[index] = payload.to_outcome(unit)
            else:
                if payload is not None:
                    logger.warning(
                        f"Ignoring non-outcome cache payload for {unit.key} "
                        f"({payload.kind})"
                    )
                pending.append(unit)

        return cached, pending

    async def execute(
        self,
        units: Sequence[TestUnit],
        workers: Sequence[str],
        runner: Union[TestRunner, RunnerFunc],
        cache_namespace: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AggregateReport:
        """
        Execute units, reusing cached passes for unchanged content.

        Args:
            units: Units to execute, in reporting order.
            workers: Worker (device) identifiers.
            runner: Capability running a single attempt.
            cache_namespace: Namespace for cache lookups and write-back.
            on_progress: Optional progress callback.

        Returns:
            AggregateReport with outcomes in input order.

        Raises:
            NoWorkersError: If ``workers`` is empty.
            WorkerPoolError: If another run is in progress on this orchestrator.
        """
        if not workers:
            raise NoWorkersError(len(units))

        start_time = datetime.now()
        started_at = time.monotonic()

        if not units:
            return self._build_report([], 0, [], started_at, start_time)

        cached, pending = self.partition(units, cache_namespace)
        logger.info(
            f"{len(cached)} of {len(units)} unit(s) served from cache "
            f"namespace {cache_namespace}, {len(pending)} to run"
        )

        fresh: List[ExecutionOutcome] = []
        if pending:
            if self.load_balance:
                estimates = self.cache.duration_estimates(
                    cache_namespace, [u.key for u in pending]
                )
                fresh = await self.pool.run_with_load_balancing(
                    pending, workers, runner,
                    estimated_durations=estimates, on_progress=on_progress,
                )
            else:
                fresh = await self.pool.run(
                    pending, workers, runner, on_progress=on_progress
                )

            self._write_back(fresh, cache_namespace)

        # Merge in input order; duplicate units are matched one-to-one
        by_unit: Dict[TestUnit, List[ExecutionOutcome]] = {}
        for outcome in fresh:
            by_unit.setdefault(outcome.unit, []).append(outcome)

        merged: List[ExecutionOutcome] = []
        for index, unit in enumerate(units):
            if index in cached:
                merged.append(cached[index])
            else:
                merged.append(by_unit[unit].pop(0))

        return self._build_report(merged, len(cached), fresh, started_at, start_time)

    def _write_back(self, fresh: List[ExecutionOutcome], cache_namespace: str) -> None:
        """Cache passing outcomes; failures are always re-run next time."""
        written = 0
        for outcome in fresh:
            if not outcome.passed:
                continue
            self.cache.put(
                CacheEntry(
                    namespace=cache_namespace,
                    key=outcome.unit.key,
                    hash=outcome.unit.content_hash,
                    payload=OutcomePayload.from_outcome(outcome),
                    timestamp=outcome.timestamp,
                )
            )
            written += 1
        logger.debug(f"Cached {written} passing outcome(s) in {cache_namespace}")

    def _build_report(
        self,
        outcomes: List[ExecutionOutcome],
        cache_hits: int,
        fresh: List[ExecutionOutcome],
        started_at: float,
        start_time: datetime,
    ) -> AggregateReport:
        """Build the aggregate report from merged outcomes."""
        report = AggregateReport(
            outcomes=outcomes,
            cache_hits=cache_hits,
            wall_clock_ms=int((time.monotonic() - started_at) * 1000),
            sequential_ms=sum(o.duration_ms for o in fresh),
            worker_statistics=self.pool.statistics if fresh else {},
            start_time=start_time,
            end_time=datetime.now(),
        )
        logger.info(report.summary())
        return report

    def cancel(self) -> None:
        """Cancel the pool run in progress."""
        self.pool.cancel()


async def execute_tests(
    units: Sequence[TestUnit],
    workers: Sequence[str],
    runner: Union[TestRunner, RunnerFunc],
    cache_namespace: str = "default",
    cache: Optional[ResultCache] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> AggregateReport:
    """
    Convenience function to run units with a throwaway in-memory cache.

    Args:
        units: Units to execute.
        workers: Worker (device) identifiers.
        runner: Capability running a single attempt.
        cache_namespace: Cache namespace.
        cache: Optional cache. A fresh in-memory cache is used if not provided.
        retry_policy: Optional retry policy.

    Returns:
        AggregateReport with all outcomes.
    """
    orchestrator = Orchestrator(cache or ResultCache(), retry_policy)
    return await orchestrator.execute(units, workers, runner, cache_namespace)
