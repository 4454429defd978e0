"""
Device Worker.

Encapsulates one execution slot bound to a single device: pulls units from the
shared queue, runs each through its full attempt sequence and keeps the
slot's statistics.
"""

import asyncio
import dataclasses
import time
from datetime import datetime
from typing import Callable, List, Optional

from loguru import logger

from testpilot.executor.errors import AttemptTimeoutError
from testpilot.executor.retry import RetryPolicy, error_kind_for
from testpilot.executor.runner import TestRunner
from testpilot.executor.types import (
    ErrorKind,
    ExecutionOutcome,
    PoolConfig,
    ProgressStatus,
    RetryState,
    TestUnit,
    UnitState,
    WorkerStats,
)

ProgressCallback = Callable[[TestUnit, str, ProgressStatus], None]


class ExecutionContext:
    """
    Execution context for a single attempt.

    Tracks timing and the error raised, if any, while the runner is called.
    """

    def __init__(self, unit: TestUnit, worker_id: str, attempt: int) -> None:
        self.unit = unit
        self.worker_id = worker_id
        self.attempt = attempt
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self._started_at = 0.0
        self._finished_at = 0.0
        self.error: Optional[str] = None
        self.error_kind: Optional[ErrorKind] = None

    def start(self) -> None:
        """Mark the start of the attempt."""
        self.start_time = datetime.now()
        self._started_at = time.monotonic()

    def finish(self, error: Optional[BaseException] = None) -> None:
        """
        Mark the end of the attempt.

        Args:
            error: Optional exception if the runner raised.
        """
        self.end_time = datetime.now()
        self._finished_at = time.monotonic()
        if error is not None:
            self.error = str(error) or type(error).__name__
            self.error_kind = error_kind_for(error)

    @property
    def duration_ms(self) -> int:
        """Get attempt duration in milliseconds."""
        if self.start_time is None or self.end_time is None:
            return 0
        return int((self._finished_at - self._started_at) * 1000)

    @property
    def raised(self) -> bool:
        return self.error is not None

    def error_outcome(self) -> ExecutionOutcome:
        """Failed outcome describing the error the runner raised."""
        return ExecutionOutcome.failure(
            self.unit,
            self.worker_id,
            self.error or "Unknown runner error",
            duration_ms=self.duration_ms,
            timestamp=self.end_time or datetime.now(),
            attempt=self.attempt,
            error_kind=self.error_kind,
        )


class DeviceWorker:
    """
    Pull-loop worker for one device slot.

    Each unit runs to completion (including all retries) before the next one
    is dequeued. Backoff sleeps suspend only this worker. Statistics are
    owned by the worker and need no synchronization.

    Example:
        worker = DeviceWorker("emulator-5554", runner, RetryPolicy())
        outcome = await worker.execute(unit)
    """

    def __init__(
        self,
        worker_id: str,
        runner: TestRunner,
        retry_policy: Optional[RetryPolicy] = None,
        config: Optional[PoolConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """
        Initialize device worker.

        Args:
            worker_id: Opaque identifier of the device slot.
            runner: Capability that runs one attempt of a unit.
            retry_policy: Retry policy applied per unit.
            config: Pool configuration (attempt timeout).
            cancel_event: Cooperative cancellation signal shared with the pool.
            on_progress: Optional progress callback.
        """
        self.worker_id = worker_id
        self.runner = runner
        self.retry_policy = retry_policy or RetryPolicy()
        self.config = config or PoolConfig()
        self.cancel_event = cancel_event or asyncio.Event()
        self.on_progress = on_progress
        self.stats = WorkerStats(worker_id=worker_id)
        self.state = UnitState.PENDING

    def _notify(self, unit: TestUnit, status: ProgressStatus) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(unit, self.worker_id, status)
        except Exception as e:
            # Progress reporting must never abort the pool
            logger.debug(f"Progress callback failed for {unit.key}: {e}")

    async def run_loop(
        self, queue: "asyncio.Queue[TestUnit]", sink: List[ExecutionOutcome]
    ) -> None:
        """
        Consume units from ``queue`` until it is empty or the pool is cancelled.

        Args:
            queue: Shared, pre-filled work queue.
            sink: List receiving one outcome per executed unit.
        """
        logger.debug(f"[{self.worker_id}] Worker started")

        while not self.cancel_event.is_set():
            try:
                unit = queue.get_nowait()
            except asyncio.QueueEmpty:
                break

            try:
                sink.append(await self.execute(unit))
            finally:
                queue.task_done()

        logger.debug(
            f"[{self.worker_id}] Worker finished: "
            f"{self.stats.passed}/{self.stats.started} passed"
        )

    async def execute(self, unit: TestUnit) -> ExecutionOutcome:
        """
        Execute ``unit`` through its full attempt sequence.

        Args:
            unit: The unit to execute.

        Returns:
            The outcome of the last attempt.
        """
        self.stats.started += 1
        started_at = time.monotonic()
        retry_state: Optional[RetryState] = None
        attempt = 1

        while True:
            self.state = UnitState.RUNNING
            outcome, raised = await self._run_attempt(unit, attempt)

            if outcome.passed:
                self.state = UnitState.PASSED
                break

            self.state = UnitState.FAILED
            if self.cancel_event.is_set() or not self.retry_policy.should_retry(
                outcome, attempt
            ):
                self.state = UnitState.EXHAUSTED
                break

            self.state = UnitState.RETRYING
            retry_state = self.retry_policy.begin_retry(retry_state, attempt)
            logger.warning(
                f"[{self.worker_id}] {unit.key} failed on attempt {attempt} "
                f"({outcome.error_message}), retrying in {retry_state.next_delay_ms}ms"
            )

            if await self._backoff(retry_state.next_delay_ms):
                logger.info(
                    f"[{self.worker_id}] Cancelled while backing off, "
                    f"keeping attempt {attempt} of {unit.key}"
                )
                self.state = UnitState.EXHAUSTED
                break
            attempt += 1

        self.stats.total_duration_ms += int((time.monotonic() - started_at) * 1000)
        if outcome.passed:
            self.stats.passed += 1
            if attempt > 1:
                logger.info(f"[{self.worker_id}] {unit.key} passed on attempt {attempt}")
            self._notify(unit, ProgressStatus.PASSED)
        else:
            self.stats.failed += 1
            logger.error(
                f"[{self.worker_id}] {unit.key} failed after {attempt} attempt(s): "
                f"{outcome.error_message}"
            )
            self._notify(unit, ProgressStatus.ERROR if raised else ProgressStatus.FAILED)

        return outcome

    async def _run_attempt(self, unit: TestUnit, attempt: int):
        """
        Run a single attempt, converting runner errors into a failed outcome.

        Returns:
            Tuple of the attempt's outcome and whether the runner raised.
        """
        context = ExecutionContext(unit, self.worker_id, attempt)
        self._notify(unit, ProgressStatus.RUNNING)
        logger.debug(f"[{self.worker_id}] Running {unit.key} (attempt {attempt})")

        context.start()
        try:
            outcome = await self._call_runner(unit)
            if not isinstance(outcome, ExecutionOutcome):
                raise TypeError(
                    f"Runner returned {type(outcome).__name__}, expected ExecutionOutcome"
                )
            context.finish()

        except Exception as e:
            context.finish(error=e)
            logger.error(
                f"[{self.worker_id}] Runner raised on {unit.key} "
                f"(attempt {attempt}): {context.error}"
            )
            return context.error_outcome(), True

        return dataclasses.replace(
            outcome, unit=unit, worker_id=self.worker_id, attempt=attempt
        ), False

    async def _call_runner(self, unit: TestUnit) -> ExecutionOutcome:
        """
        Await the runner, bounded by the attempt timeout when one is set.

        Errors raised by the runner itself, timeouts included, propagate
        unchanged.

        Raises:
            AttemptTimeoutError: If the attempt outlives ``attempt_timeout_ms``.
        """
        timeout_ms = self.config.attempt_timeout_ms
        if timeout_ms is None:
            return await self.runner(unit, self.worker_id)

        task = asyncio.ensure_future(self.runner(unit, self.worker_id))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000.0)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise AttemptTimeoutError(timeout_ms, self.worker_id)
        return task.result()

    async def _backoff(self, delay_ms: int) -> bool:
        """
        Sleep before a retry, waking early on cancellation.

        Returns:
            True if the pool was cancelled during the wait.
        """
        if delay_ms <= 0:
            return self.cancel_event.is_set()
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay_ms / 1000.0)
        except asyncio.TimeoutError:
            return False
        return True
