import logging
import threading
import time

import pytest

from conftest import PAUSE, RESUME, FakeRepository, FakeRuntime, make_target
from world_backup.executor import BackupExecutor
from world_backup.models import STATUS_FAILED, STATUS_SUCCESS, BackupOutcome
from world_backup.pipeline import TargetPipeline
from world_backup.quiesce import QuiesceSettings
from world_backup.scheduler import TargetScheduler


def build_pipeline(runtime, repository):
    return TargetPipeline(
        runtime,
        BackupExecutor(repository),
        quiesce_settings=QuiesceSettings(poll_interval_seconds=0, max_poll_attempts=1),
        sleep=lambda _seconds: None,
    )


@pytest.mark.parametrize("parallel", [False, True])
def test_one_failing_pause_does_not_affect_siblings(parallel):
    runtime = FakeRuntime(running=["mc-a", "mc-b", "mc-c"])
    runtime.fail("mc-b", PAUSE)
    repository = FakeRepository()
    scheduler = TargetScheduler(build_pipeline(runtime, repository), parallel=parallel, max_concurrency=2)
    targets = [make_target("a"), make_target("b"), make_target("c")]

    run = scheduler.run(targets)

    assert run.success_count == 2
    assert run.failed_target_ids == ["b"]
    assert run.failed
    for container in ("mc-a", "mc-b", "mc-c"):
        assert runtime.commands_for(container).count(RESUME) == 1
    assert sorted(tag for _path, _host, tag in repository.backups) == ["mc-a", "mc-c"]


@pytest.mark.parametrize("parallel", [False, True])
@pytest.mark.parametrize("count", [0, 1, 5])
def test_every_target_is_accounted_for(parallel, count):
    def pipeline(target):
        status = STATUS_FAILED if int(target.target_id[1:]) % 2 else STATUS_SUCCESS
        return BackupOutcome(target.target_id, status)

    targets = [make_target(f"t{i}") for i in range(count)]
    run = TargetScheduler(pipeline, parallel=parallel, max_concurrency=3).run(targets)

    assert run.success_count + len(run.failed_target_ids) == count
    assert run.total == count


def test_parallel_never_exceeds_concurrency_bound():
    lock = threading.Lock()
    in_flight = 0
    peak = 0

    def pipeline(target):
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.02)
        with lock:
            in_flight -= 1
        return BackupOutcome(target.target_id, STATUS_SUCCESS)

    targets = [make_target(f"t{i}") for i in range(8)]
    run = TargetScheduler(pipeline, parallel=True, max_concurrency=2).run(targets)

    assert run.success_count == 8
    assert 1 <= peak <= 2


def test_raising_pipeline_becomes_failed_outcome():
    def pipeline(target):
        if target.target_id == "b":
            raise RuntimeError("boom")
        return BackupOutcome(target.target_id, STATUS_SUCCESS)

    run = TargetScheduler(pipeline, parallel=True).run([make_target("a"), make_target("b")])

    assert run.success_count == 1
    assert run.failed_target_ids == ["b"]


def test_duplicate_target_ids_rejected():
    scheduler = TargetScheduler(lambda target: BackupOutcome(target.target_id, STATUS_SUCCESS))

    with pytest.raises(ValueError, match="Duplicate"):
        scheduler.run([make_target("a"), make_target("a", container="other")])


def test_concurrency_bound_must_be_positive():
    with pytest.raises(ValueError):
        TargetScheduler(lambda target: None, parallel=True, max_concurrency=0)


def test_parallel_failure_is_logged_once(caplog):
    def pipeline(target):
        status = STATUS_FAILED if target.target_id == "b" else STATUS_SUCCESS
        return BackupOutcome(target.target_id, status, "pause command exited with 1")

    with caplog.at_level(logging.INFO):
        run = TargetScheduler(pipeline, parallel=True).run([make_target("a"), make_target("b")])

    failure_lines = [
        record for record in caplog.records if record.levelno == logging.ERROR and "Target b failed" in record.getMessage()
    ]
    assert run.failed_target_ids == ["b"]
    assert len(failure_lines) == 1
    assert "[parallel] Target a succeeded" in caplog.messages
