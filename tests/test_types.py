from datetime import datetime

import pytest

from testpilot.executor import (
    AggregateReport,
    ExecutionOutcome,
    OutcomeStatus,
    PoolConfig,
    RetryConfig,
    TestUnit,
    WorkerStats,
    compute_content_hash,
)


def _report(outcomes, wall_clock_ms=100, sequential_ms=200, cache_hits=0):
    now = datetime.now()
    return AggregateReport(
        outcomes=outcomes,
        cache_hits=cache_hits,
        wall_clock_ms=wall_clock_ms,
        sequential_ms=sequential_ms,
        worker_statistics={},
        start_time=now,
        end_time=now,
    )


def test_unit_requires_path_and_hash():
    with pytest.raises(ValueError):
        TestUnit(path="", content_hash="abc")
    with pytest.raises(ValueError):
        TestUnit(path="test/login_test.dart", content_hash="")


def test_unit_key_is_path():
    unit = TestUnit(path="test/login_test.dart", content_hash="abc")
    assert unit.key == "test/login_test.dart"


def test_unit_from_file_hashes_content(tmp_path):
    test_file = tmp_path / "login_test.dart"
    test_file.write_text("void main() {}")

    unit = TestUnit.from_file(test_file)
    assert unit.path == str(test_file)
    assert unit.content_hash == compute_content_hash("void main() {}")

    test_file.write_text("void main() { expect(1, 1); }")
    assert TestUnit.from_file(test_file).content_hash != unit.content_hash


def test_units_ignore_metadata_for_equality():
    a = TestUnit(path="a.dart", content_hash="h", metadata={"suite": "ui"})
    b = TestUnit(path="a.dart", content_hash="h")
    assert a == b
    assert hash(a) == hash(b)


def test_outcome_status():
    unit = TestUnit(path="a.dart", content_hash="h")
    assert ExecutionOutcome.success(unit, "w1").status == OutcomeStatus.PASSED
    assert ExecutionOutcome.failure(unit, "w1", "boom").status == OutcomeStatus.FAILED

    skipped = ExecutionOutcome.skip(unit)
    assert skipped.status == OutcomeStatus.SKIPPED
    assert skipped.attempt == 0
    assert not skipped.passed


def test_report_counts_and_speedup():
    unit = TestUnit(path="a.dart", content_hash="h")
    report = _report([
        ExecutionOutcome.success(unit, "w1"),
        ExecutionOutcome.success(unit, "w2", attempt=2),
        ExecutionOutcome.failure(unit, "w1", "boom"),
        ExecutionOutcome.skip(unit),
    ])

    assert report.total == 4
    assert report.passed == 2
    assert report.failed == 1
    assert report.skipped == 1
    assert report.speedup == pytest.approx(2.0)
    assert not report.success
    assert [o.worker_id for o in report.flaky_units] == ["w2"]
    assert "2/4 passed" in report.summary()


def test_report_speedup_with_zero_wall_clock():
    assert _report([], wall_clock_ms=0, sequential_ms=0).speedup == 1.0


def test_worker_stats_success_rate():
    assert WorkerStats(worker_id="w1").success_rate == 0.0
    assert WorkerStats(worker_id="w1", started=4, passed=3, failed=1).success_rate == 0.75


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_retries": 0},
        {"initial_delay_ms": -1},
        {"backoff_multiplier": 0.5},
        {"initial_delay_ms": 1000, "max_delay_ms": 10},
    ],
)
def test_retry_config_validation(kwargs):
    with pytest.raises(ValueError):
        RetryConfig(**kwargs)


@pytest.mark.parametrize(
    "kwargs",
    [{"attempt_timeout_ms": 0}, {"batch_pause_ms": -1}, {"max_workers": 0}],
)
def test_pool_config_validation(kwargs):
    with pytest.raises(ValueError):
        PoolConfig(**kwargs)
