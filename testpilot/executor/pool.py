"""
Worker Pool.

Distributes units across a fixed set of device slots. Every slot pulls from a
single shared queue, so a slow unit on one device never delays the others.
"""

import asyncio
from typing import Dict, List, Mapping, Optional, Sequence, Union

from loguru import logger

from testpilot.executor.errors import NoWorkersError, WorkerPoolError
from testpilot.executor.retry import RetryPolicy
from testpilot.executor.runner import RunnerFunc, TestRunner, as_test_runner
from testpilot.executor.types import (
    ExecutionOutcome,
    PoolConfig,
    ProgressStatus,
    TestUnit,
    WorkerStats,
)
from testpilot.executor.worker import DeviceWorker, ProgressCallback


class WorkerPool:
    """
    Pull-model worker pool, one worker loop per device.

    No guarantee is made about outcome order or about which worker executes
    which unit; only that every unit is executed by exactly one worker,
    through exactly one attempt sequence.

    A pool runs one unit list at a time; cancellation and statistics
    belong to that run.

    Example:
        pool = WorkerPool(RetryPolicy.moderate())
        outcomes = await pool.run(units, ["emulator-5554", "R58M123"], runner)
        print(pool.statistics)
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        config: Optional[PoolConfig] = None,
    ) -> None:
        """
        Initialize the worker pool.

        Args:
            retry_policy: Policy applied to every unit. Uses defaults if not provided.
            config: Pool configuration. Uses defaults if not provided.
        """
        self.retry_policy = retry_policy or RetryPolicy()
        self.config = config or PoolConfig()
        self._cancel_event = asyncio.Event()
        self._subscribers: List[ProgressCallback] = []
        self._statistics: Dict[str, WorkerStats] = {}
        self._running = False

    def subscribe(self, callback: ProgressCallback) -> None:
        """
        Subscribe to progress events.

        Args:
            callback: Called with (unit, worker_id, status) on every transition.
        """
        self._subscribers.append(callback)

    def unsubscribe(self, callback: ProgressCallback) -> None:
        """
        Unsubscribe from progress events.

        Args:
            callback: The callback function to remove.
        """
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def _emit_progress(
        self,
        listeners: List[ProgressCallback],
        unit: TestUnit,
        worker_id: str,
        status: ProgressStatus,
    ) -> None:
        for listener in listeners:
            try:
                listener(unit, worker_id, status)
            except Exception as e:
                logger.debug(f"Progress subscriber failed for {unit.key}: {e}")

    def cancel(self) -> None:
        """
        Request cooperative cancellation.

        Workers finish the attempt they are running, start no further
        attempts or units, and exit. Units still queued are reported as
        skipped.
        """
        logger.info("Cancelling worker pool")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def statistics(self) -> Dict[str, WorkerStats]:
        """Per-worker statistics of the most recent run."""
        return dict(self._statistics)

    async def run(
        self,
        units: Sequence[TestUnit],
        workers: Sequence[str],
        runner: Union[TestRunner, RunnerFunc],
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[ExecutionOutcome]:
        """
        Execute every unit on the given workers.

        Args:
            units: Units to execute.
            workers: Worker (device) identifiers; one loop runs per worker.
            runner: Capability running a single attempt.
            on_progress: Optional callback for this run, in addition to subscribers.

        Returns:
            One outcome per unit, in completion order. Units left unexecuted
            by cancellation are included as skipped outcomes.

        Raises:
            NoWorkersError: If ``workers`` is empty.
            WorkerPoolError: If the work queue ends up inconsistent,
                or if a run is already in progress on this pool.
        """
        if not workers:
            raise NoWorkersError(len(units))

        if self._running:
            raise WorkerPoolError("a run is already in progress on this pool")

        self._cancel_event = asyncio.Event()
        self._statistics = {}
        if not units:
            return []

        slots = list(workers)
        if self.config.max_workers is not None:
            slots = slots[: self.config.max_workers]

        listeners = list(self._subscribers)
        if on_progress is not None:
            listeners.append(on_progress)

        def notify(unit: TestUnit, worker_id: str, status: ProgressStatus) -> None:
            self._emit_progress(listeners, unit, worker_id, status)

        queue: "asyncio.Queue[TestUnit]" = asyncio.Queue()
        for unit in units:
            queue.put_nowait(unit)

        test_runner = as_test_runner(runner)
        device_workers = [
            DeviceWorker(
                worker_id,
                test_runner,
                retry_policy=self.retry_policy,
                config=self.config,
                cancel_event=self._cancel_event,
                on_progress=notify if listeners else None,
            )
            for worker_id in slots
        ]

        logger.info(f"Running {len(units)} unit(s) on {len(slots)} worker(s)")

        outcomes: List[ExecutionOutcome] = []
        tasks = [
            asyncio.create_task(worker.run_loop(queue, outcomes))
            for worker in device_workers
        ]

        self._running = True
        try:
            await asyncio.gather(*tasks)
        except Exception as e:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise WorkerPoolError(str(e), cause=e) from e
        finally:
            self._running = False
            self._statistics = {w.worker_id: w.stats for w in device_workers}

        skipped = 0
        while True:
            try:
                unit = queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            outcomes.append(ExecutionOutcome.skip(unit))
            queue.task_done()
            skipped += 1

        if len(outcomes) != len(units):
            raise WorkerPoolError(
                f"expected {len(units)} outcomes, collected {len(outcomes)}"
            )

        self._log_summary(outcomes, skipped)
        return outcomes

    async def run_with_load_balancing(
        self,
        units: Sequence[TestUnit],
        workers: Sequence[str],
        runner: Union[TestRunner, RunnerFunc],
        estimated_durations: Optional[Mapping[str, int]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[ExecutionOutcome]:
        """
        Run units longest-first to shorten the tail of the run.

        Estimates come from ``estimated_durations`` (keyed by unit key) or
        from each unit's ``estimated_duration_ms``; units without an estimate
        keep their relative order at the end.
        """
        estimates = dict(estimated_durations or {})

        def estimate(unit: TestUnit) -> int:
            if unit.key in estimates:
                return estimates[unit.key]
            return unit.estimated_duration_ms or 0

        if not estimates and all(u.estimated_duration_ms is None for u in units):
            return await self.run(units, workers, runner, on_progress=on_progress)

        ordered = sorted(units, key=estimate, reverse=True)
        logger.info("Load balancing enabled (running longest units first)")
        return await self.run(ordered, workers, runner, on_progress=on_progress)

    async def run_in_batches(
        self,
        units: Sequence[TestUnit],
        workers: Sequence[str],
        runner: Union[TestRunner, RunnerFunc],
        batch_size: int = 10,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[ExecutionOutcome]:
        """
        Run units in fixed-size batches with a pause between batches.

        Bounds peak device load at the cost of total wall-clock time.
        Statistics are accumulated across batches.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if not workers:
            raise NoWorkersError(len(units))

        batches = [
            list(units[i:i + batch_size]) for i in range(0, len(units), batch_size)
        ]
        logger.info(f"Running {len(units)} unit(s) in {len(batches)} batch(es)")

        all_outcomes: List[ExecutionOutcome] = []
        totals: Dict[str, WorkerStats] = {}

        for index, batch in enumerate(batches):
            if self.cancelled:
                all_outcomes.extend(ExecutionOutcome.skip(u) for u in batch)
                continue

            logger.info(f"Batch {index + 1}/{len(batches)} ({len(batch)} units)")
            all_outcomes.extend(
                await self.run(batch, workers, runner, on_progress=on_progress)
            )
            _merge_statistics(totals, self._statistics)

            if index < len(batches) - 1 and not self.cancelled:
                await asyncio.sleep(self.config.batch_pause_ms / 1000.0)

        self._statistics = totals
        return all_outcomes

    @staticmethod
    def optimal_worker_count(unit_count: int) -> int:
        """Suggested number of device slots for a run of ``unit_count`` units."""
        if unit_count <= 3:
            return 1
        if unit_count <= 10:
            return 2
        if unit_count <= 20:
            return 3
        return 4

    def _log_summary(self, outcomes: List[ExecutionOutcome], skipped: int) -> None:
        passed = sum(1 for o in outcomes if o.passed)
        logger.info(
            f"Pool finished: {passed} passed, "
            f"{len(outcomes) - passed - skipped} failed, {skipped} skipped"
        )
        for stats in self._statistics.values():
            if stats.started > 0:
                logger.debug(
                    f"  {stats.worker_id}: {stats.passed}/{stats.started} passed "
                    f"in {stats.total_duration_ms}ms"
                )


def _merge_statistics(
    totals: Dict[str, WorkerStats], batch: Dict[str, WorkerStats]
) -> None:
    for worker_id, stats in batch.items():
        acc = totals.setdefault(worker_id, WorkerStats(worker_id=worker_id))
        acc.started += stats.started
        acc.passed += stats.passed
        acc.failed += stats.failed
        acc.total_duration_ms += stats.total_duration_ms
