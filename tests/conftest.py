from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from world_backup.models import BackupTarget, RetentionPolicy
from world_backup.quiesce import QuiesceSettings
from world_backup.repository import CommandResult

PAUSE = ("rcon-cli", "save-off")
FLUSH = ("rcon-cli", "save-all")
RESUME = ("rcon-cli", "save-on")

LOCKED_OUTPUT = (
    "repo already locked, waiting up to 0s for the lock\n"
    "unable to create lock in backend: repository is already locked by PID 4242 on host by root\n"
    "lock was created at 2024-05-01 03:00:00 (5h0m0s ago)\n"
    "storage ID 1a2b3c4d\n"
)
MISSING_OUTPUT = (
    "Fatal: unable to open config file: Stat: The specified key does not exist.\n"
    "Is there a repository at the following location?\n"
)
TRANSIENT_OUTPUT = "Fatal: unable to open repository: dial tcp: i/o timeout\n"


class FakeRuntime:
    def __init__(
        self,
        running: Sequence[str] = (),
        logs: str = "[Server thread/INFO]: Saved the game",
    ) -> None:
        self.running = set(running)
        self.logs = logs
        self.failing: Dict[Tuple[str, Tuple[str, ...]], int] = {}
        self.calls: List[Tuple[str, Tuple[str, ...]]] = []
        self.log_requests: List[Tuple[str, datetime]] = []
        self._lock = threading.Lock()

    def fail(self, container: str, argv: Sequence[str], status: int = 1) -> None:
        self.failing[(container, tuple(argv))] = status

    def is_running(self, name: str) -> bool:
        return name in self.running

    def exec(self, name: str, argv: Sequence[str]) -> int:
        key = (name, tuple(argv))
        with self._lock:
            self.calls.append(key)
        return self.failing.get(key, 0)

    def logs_since(self, name: str, since: datetime) -> str:
        with self._lock:
            self.log_requests.append((name, since))
        return self.logs

    def commands_for(self, container: str) -> List[Tuple[str, ...]]:
        return [argv for name, argv in self.calls if name == container]


class FakeRepository:
    def __init__(self) -> None:
        self.probe_results: List[CommandResult] = [CommandResult(0)]
        self.forget_results: List[CommandResult] = [CommandResult(0)]
        self.unlock_status = 0
        self.init_status = 0
        self.backup_status = 0
        self.backup_adds_snapshot = True
        self.list_error: Optional[Exception] = None
        self.snapshots: List[dict] = []
        self.probe_calls = 0
        self.unlock_calls = 0
        self.init_calls = 0
        self.backups: List[Tuple[Path, str, str]] = []
        self.forgets: List[Tuple[RetentionPolicy, str]] = []
        self._lock = threading.Lock()

    def _next(self, results: List[CommandResult]) -> CommandResult:
        if len(results) > 1:
            return results.pop(0)
        return results[0]

    def list_snapshots(self, no_lock: bool = True) -> List[dict]:
        if self.list_error is not None:
            raise self.list_error
        with self._lock:
            return list(self.snapshots)

    def backup(self, path: Path, host: str, tag: str) -> int:
        with self._lock:
            self.backups.append((path, host, tag))
            if self.backup_status == 0 and self.backup_adds_snapshot:
                self.snapshots.append({"tags": [tag], "hostname": host, "paths": [str(path)]})
        return self.backup_status

    def forget_prune(self, policy: RetentionPolicy, tag: str) -> CommandResult:
        self.forgets.append((policy, tag))
        return self._next(self.forget_results)

    def unlock(self) -> int:
        self.unlock_calls += 1
        return self.unlock_status

    def init(self) -> int:
        self.init_calls += 1
        return self.init_status

    def probe(self) -> CommandResult:
        self.probe_calls += 1
        return self._next(self.probe_results)

    def latest_snapshots(self) -> CommandResult:
        return CommandResult(0, "ID        Time                 Host  Tags\n1a2b3c4d  2024-05-01 03:00:00  mc    survival\n")


def make_target(name: str, **overrides) -> BackupTarget:
    values = {
        "target_id": name,
        "container": f"mc-{name}",
        "world_path": Path(f"/srv/worlds/{name}"),
        "tag": f"mc-{name}",
        "host": "backup-host",
    }
    values.update(overrides)
    return BackupTarget(**values)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime(running=["mc-a", "mc-b", "mc-c"])


@pytest.fixture
def fake_repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def fast_quiesce() -> QuiesceSettings:
    return QuiesceSettings(poll_interval_seconds=0, max_poll_attempts=3)
