"""
Test Runner boundary.

The engine never spawns test processes itself: it calls an injected
``TestRunner`` for one (unit, worker) attempt at a time. This module defines
that capability and adapts plain functions to it.
"""

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Protocol, Union, runtime_checkable

from testpilot.executor.types import ExecutionOutcome, TestUnit


@runtime_checkable
class TestRunner(Protocol):
    """Runs one attempt of ``unit`` on the device named ``worker_id``."""
    __test__ = False  # Not a pytest test class

    async def __call__(self, unit: TestUnit, worker_id: str) -> ExecutionOutcome:
        ...


RunnerResult = Union[ExecutionOutcome, bool, None]
RunnerFunc = Callable[[TestUnit, str], Union[RunnerResult, Awaitable[RunnerResult]]]


def _is_async_callable(func: Any) -> bool:
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


class FunctionRunner:
    """
    Adapt a plain function to the TestRunner capability.

    The function may be sync or async. It may return an ExecutionOutcome,
    a bool (passed / failed), or None (passed). Exceptions propagate to the
    caller, which records them as failed attempts. Sync functions run in the
    default executor so a blocking call never stalls other workers.

    Example:
        def run_flutter_test(unit, device_id):
            return subprocess.run([...]).returncode == 0

        runner = FunctionRunner(run_flutter_test)
    """

    def __init__(self, func: RunnerFunc) -> None:
        if not callable(func):
            raise TypeError(f"Runner must be callable, got {type(func).__name__}")
        self.func = func
        self._is_async = _is_async_callable(func)

    async def __call__(self, unit: TestUnit, worker_id: str) -> ExecutionOutcome:
        start = time.monotonic()

        if self._is_async:
            result = await self.func(unit, worker_id)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, self.func, unit, worker_id)
            if inspect.isawaitable(result):
                result = await result

        if isinstance(result, ExecutionOutcome):
            return result

        duration_ms = int((time.monotonic() - start) * 1000)
        if result is None or result is True:
            return ExecutionOutcome.success(unit, worker_id, duration_ms)
        if result is False:
            return ExecutionOutcome.failure(
                unit, worker_id, "Test reported failure", duration_ms
            )
        raise TypeError(
            f"Runner returned unsupported result type {type(result).__name__}"
        )

    def __repr__(self) -> str:
        name = getattr(self.func, "__name__", type(self.func).__name__)
        return f"FunctionRunner({name})"


def as_test_runner(runner: Union[FunctionRunner, RunnerFunc]) -> FunctionRunner:
    """Normalize any supported runner callable to a FunctionRunner."""
    if isinstance(runner, FunctionRunner):
        return runner
    return FunctionRunner(runner)
