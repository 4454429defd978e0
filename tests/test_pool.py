import asyncio
import time

import pytest

from testpilot.executor import (
    NoWorkersError,
    OutcomeStatus,
    PoolConfig,
    ProgressStatus,
    RetryConfig,
    RetryPolicy,
    TestUnit,
    WorkerPool,
    WorkerPoolError,
)
from conftest import ProgressRecorder, ScriptedRunner, make_units

DEVICES = ["emulator-5554", "emulator-5556"]


@pytest.mark.asyncio
async def test_empty_worker_list_raises(units, fast_retry):
    pool = WorkerPool(fast_retry)
    with pytest.raises(NoWorkersError):
        await pool.run(units, [], ScriptedRunner())


@pytest.mark.asyncio
async def test_empty_unit_list(fast_retry):
    pool = WorkerPool(fast_retry)
    assert await pool.run([], DEVICES, ScriptedRunner()) == []


@pytest.mark.asyncio
async def test_every_unit_executed_once(fast_retry):
    units = make_units(10)
    runner = ScriptedRunner(duration_ms=5)
    pool = WorkerPool(fast_retry)

    outcomes = await pool.run(units, DEVICES + ["R58M123"], runner)

    assert len(outcomes) == len(units)
    assert sorted(o.unit.key for o in outcomes) == sorted(u.key for u in units)
    assert all(runner.call_count(u.key) == 1 for u in units)
    assert runner.overlapping_attempts == 0


@pytest.mark.asyncio
async def test_parallel_speedup(units, fast_retry):
    runner = ScriptedRunner(duration_ms=100)
    pool = WorkerPool(fast_retry)

    started = time.monotonic()
    outcomes = await pool.run(units, DEVICES, runner)
    elapsed = time.monotonic() - started

    sequential = sum(o.duration_ms for o in outcomes) / 1000.0
    assert sequential == pytest.approx(0.6)
    assert 1.6 < sequential / elapsed <= 2.1


@pytest.mark.asyncio
async def test_retry_bound_across_pool(fast_retry):
    units = make_units(3)
    script = {u.key: ["device offline"] * 10 for u in units}
    runner = ScriptedRunner(script=script)
    pool = WorkerPool(fast_retry)

    outcomes = await pool.run(units, DEVICES, runner)

    assert all(not o.passed for o in outcomes)
    assert all(o.attempt == fast_retry.max_retries for o in outcomes)
    assert runner.call_count() == len(units) * fast_retry.max_retries
    assert runner.overlapping_attempts == 0


@pytest.mark.asyncio
async def test_backoff_does_not_stall_other_workers():
    units = make_units(4)
    slow = units[0]
    runner = ScriptedRunner(duration_ms=20, script={slow.key: ["network error", True]})
    policy = RetryPolicy(RetryConfig(max_retries=2, initial_delay_ms=300))
    pool = WorkerPool(policy)

    outcomes = await pool.run(units, DEVICES, runner)

    assert all(o.passed for o in outcomes)
    slow_worker = {w for k, w in runner.calls if k == slow.key}
    others = {w for k, w in runner.calls if k != slow.key}
    assert len(slow_worker) == 1
    assert slow_worker.isdisjoint(others)


@pytest.mark.asyncio
async def test_load_balancing_runs_longest_first(fast_retry):
    units = make_units(4)
    estimates = {units[0].key: 10, units[1].key: 500, units[3].key: 90}
    runner = ScriptedRunner()
    pool = WorkerPool(fast_retry)

    await pool.run_with_load_balancing(
        units, ["emulator-5554"], runner, estimated_durations=estimates
    )

    order = [k for k, _ in runner.calls]
    assert order == [units[1].key, units[3].key, units[0].key, units[2].key]


@pytest.mark.asyncio
async def test_load_balancing_uses_unit_estimates(fast_retry):
    units = [
        TestUnit(path="short_test.dart", content_hash="a", estimated_duration_ms=100),
        TestUnit(path="long_test.dart", content_hash="b", estimated_duration_ms=9000),
    ]
    runner = ScriptedRunner()
    pool = WorkerPool(fast_retry)

    await pool.run_with_load_balancing(units, ["emulator-5554"], runner)

    assert [k for k, _ in runner.calls] == ["long_test.dart", "short_test.dart"]


@pytest.mark.asyncio
async def test_cancel_skips_queued_units(units, fast_retry):
    pool = WorkerPool(fast_retry)

    def cancel_after_first(unit, worker_id, status):
        if status == ProgressStatus.PASSED:
            pool.cancel()

    outcomes = await pool.run(
        units, ["emulator-5554"], ScriptedRunner(), on_progress=cancel_after_first
    )

    assert len(outcomes) == len(units)
    statuses = [o.status for o in outcomes]
    assert statuses.count(OutcomeStatus.PASSED) == 1
    assert statuses.count(OutcomeStatus.SKIPPED) == len(units) - 1
    assert all(o.attempt == 0 for o in outcomes if o.skipped)
    assert pool.cancelled


@pytest.mark.asyncio
async def test_new_run_resets_cancellation(units, fast_retry):
    pool = WorkerPool(fast_retry)
    pool.cancel()

    outcomes = await pool.run(units, DEVICES, ScriptedRunner())

    assert all(o.passed for o in outcomes)


@pytest.mark.asyncio
async def test_max_workers_limits_slots(units, fast_retry):
    runner = ScriptedRunner(duration_ms=5)
    pool = WorkerPool(fast_retry, PoolConfig(max_workers=1))

    await pool.run(units, DEVICES, runner)

    assert {w for _, w in runner.calls} == {"emulator-5554"}
    assert list(pool.statistics) == ["emulator-5554"]


@pytest.mark.asyncio
async def test_run_in_batches(fast_retry):
    units = make_units(5)
    runner = ScriptedRunner(script={units[4].key: ["assertion failed"]})
    pool = WorkerPool(fast_retry, PoolConfig(batch_pause_ms=0))

    outcomes = await pool.run_in_batches(units, DEVICES, runner, batch_size=2)

    assert len(outcomes) == 5
    assert runner.call_count() == 5
    stats = pool.statistics
    assert sum(s.started for s in stats.values()) == 5
    assert sum(s.failed for s in stats.values()) == 1


@pytest.mark.asyncio
async def test_run_in_batches_rejects_bad_size(units, fast_retry):
    with pytest.raises(ValueError):
        await WorkerPool(fast_retry).run_in_batches(units, DEVICES, ScriptedRunner(), 0)


@pytest.mark.asyncio
async def test_statistics_and_subscribers(units, fast_retry):
    runner = ScriptedRunner(script={units[0].key: ["Expected: 1"]})
    pool = WorkerPool(fast_retry)
    recorder = ProgressRecorder()
    removed = ProgressRecorder()
    pool.subscribe(recorder)
    pool.subscribe(removed)
    pool.unsubscribe(removed)

    await pool.run(units, DEVICES, runner)

    stats = pool.statistics
    assert sum(s.started for s in stats.values()) == len(units)
    for s in stats.values():
        assert s.started == s.passed + s.failed
    assert recorder.statuses(units[0].key)[-1] == ProgressStatus.FAILED
    assert removed.events == []
    assert not pool.is_running


@pytest.mark.asyncio
async def test_sync_function_runner(units, fast_retry):
    def run_test(unit, worker_id):
        return unit.key != units[2].key

    outcomes = await WorkerPool(fast_retry).run(units, DEVICES, run_test)

    failed = [o for o in outcomes if not o.passed]
    assert [o.unit for o in failed] == [units[2]]
    assert failed[0].error_message == "Test reported failure"


@pytest.mark.parametrize(
    "count, expected", [(1, 1), (3, 1), (4, 2), (10, 2), (11, 3), (20, 3), (21, 4), (500, 4)]
)
def test_optimal_worker_count(count, expected):
    assert WorkerPool.optimal_worker_count(count) == expected


@pytest.mark.asyncio
async def test_concurrent_runs_on_one_pool_are_rejected(units, fast_retry):
    pool = WorkerPool(fast_retry)
    runner = ScriptedRunner(duration_ms=20)

    first, second = await asyncio.gather(
        pool.run(units, DEVICES, runner),
        pool.run(units, DEVICES, runner),
        return_exceptions=True,
    )

    assert len(first) == len(units)
    assert isinstance(second, WorkerPoolError)
    assert runner.call_count() == len(units)
    assert not pool.is_running
