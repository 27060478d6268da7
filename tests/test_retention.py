import logging

from conftest import LOCKED_OUTPUT, TRANSIENT_OUTPUT, make_target
from world_backup.guard import RepositoryGuard
from world_backup.models import RetentionPolicy
from world_backup.repository import CommandResult
from world_backup.retention import RetentionSweeper

SHARED = RetentionPolicy(keep_daily=9, keep_weekly=14, keep_monthly=8, keep_last=12)


def make_sweeper(repository, sleeps):
    guard = RepositoryGuard(repository, sleep=sleeps.append)
    return RetentionSweeper(repository, guard, SHARED)


def test_prunes_each_distinct_tag_once(fake_repository, sleeps):
    override = RetentionPolicy(keep_last=3)
    targets = [
        make_target("b"),
        make_target("a", retention=override),
        make_target("c", tag="mc-b"),
    ]

    assert make_sweeper(fake_repository, sleeps).sweep(targets) is True

    assert fake_repository.forgets == [(override, "mc-a"), (SHARED, "mc-b")]


def test_lock_is_recovered(fake_repository, sleeps):
    fake_repository.forget_results = [CommandResult(1, LOCKED_OUTPUT), CommandResult(0)]

    assert make_sweeper(fake_repository, sleeps).sweep([make_target("a")]) is True
    assert fake_repository.unlock_calls == 1
    assert sleeps == [2.0]


def test_failure_is_a_warning(fake_repository, sleeps, caplog):
    fake_repository.forget_results = [CommandResult(1, TRANSIENT_OUTPUT)]

    with caplog.at_level(logging.INFO):
        result = make_sweeper(fake_repository, sleeps).sweep([make_target("a"), make_target("b")])

    assert result is False
    assert len(fake_repository.forgets) == 2
    assert "Snapshot cleanup failed, backups are complete" in caplog.messages


def test_exception_from_repository_is_contained(fake_repository, sleeps):
    def explode(policy, tag):
        raise OSError("network down")

    fake_repository.forget_prune = explode

    assert make_sweeper(fake_repository, sleeps).sweep([make_target("a")]) is False


def test_conflicting_policies_on_shared_tag_warn_and_keep_first(fake_repository, sleeps, caplog):
    override = RetentionPolicy(keep_last=3)
    targets = [make_target("a", tag="shared"), make_target("b", tag="shared", retention=override)]

    with caplog.at_level(logging.WARNING):
        policies = make_sweeper(fake_repository, sleeps).policies_by_tag(targets)

    assert policies == {"shared": SHARED}
    assert any("share tag shared with different retention" in message for message in caplog.messages)
