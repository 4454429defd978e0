import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from testpilot.executor import (
    ExecutionOutcome,
    ProgressStatus,
    RetryConfig,
    RetryPolicy,
    TestUnit,
    compute_content_hash,
)


def make_units(count: int, prefix: str = "integration_test/test") -> List[TestUnit]:
    return [
        TestUnit(
            path=f"{prefix}_{i}.dart",
            content_hash=compute_content_hash(f"{prefix}_{i} v1"),
        )
        for i in range(count)
    ]


class ScriptedRunner:
    """
    Fake test runner.

    ``script`` maps a unit key to the results of its successive attempts:
    True passes, a string fails with that message, an exception is raised.
    Attempts past the end of the script pass.
    """

    def __init__(
        self,
        duration_ms: int = 0,
        script: Optional[Dict[str, Sequence[object]]] = None,
        durations: Optional[Dict[str, int]] = None,
    ) -> None:
        self.duration_ms = duration_ms
        self.durations = durations or {}
        self.script = {key: list(steps) for key, steps in (script or {}).items()}
        self.calls: List[Tuple[str, str]] = []
        self._in_flight: Dict[str, int] = {}
        self.overlapping_attempts = 0

    async def __call__(self, unit: TestUnit, worker_id: str) -> ExecutionOutcome:
        self.calls.append((unit.key, worker_id))
        self._in_flight[unit.key] = self._in_flight.get(unit.key, 0) + 1
        if self._in_flight[unit.key] > 1:
            self.overlapping_attempts += 1

        duration_ms = self.durations.get(unit.key, self.duration_ms)
        try:
            if duration_ms:
                await asyncio.sleep(duration_ms / 1000.0)
        finally:
            self._in_flight[unit.key] -= 1

        steps = self.script.get(unit.key)
        step = steps.pop(0) if steps else True
        if isinstance(step, BaseException):
            raise step
        if step is True:
            return ExecutionOutcome.success(unit, worker_id, duration_ms)
        return ExecutionOutcome.failure(unit, worker_id, str(step), duration_ms)

    def call_count(self, key: Optional[str] = None) -> int:
        if key is None:
            return len(self.calls)
        return sum(1 for k, _ in self.calls if k == key)


class ProgressRecorder:
    def __init__(self) -> None:
        self.events: List[Tuple[str, str, ProgressStatus]] = []

    def __call__(self, unit: TestUnit, worker_id: str, status: ProgressStatus) -> None:
        self.events.append((unit.key, worker_id, status))

    def statuses(self, key: str) -> List[ProgressStatus]:
        return [status for k, _, status in self.events if k == key]


@pytest.fixture
def units() -> List[TestUnit]:
    return make_units(6)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(
        RetryConfig(max_retries=3, initial_delay_ms=1, backoff_multiplier=2.0, max_delay_ms=5)
    )


@pytest.fixture
def progress() -> ProgressRecorder:
    return ProgressRecorder()
