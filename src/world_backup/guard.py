"""Retry and recovery around snapshot repository operations.

restic reports failures only as human readable text, so failures are
classified by matching the patterns in :data:`FAILURE_PATTERNS` and the guard
reacts by unlocking, initialising, or backing off and retrying.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .models import FailureKind, RepositoryConnectionState
from .repository import CommandResult, SnapshotRepository

LOG = logging.getLogger(__name__)

FAILURE_PATTERNS: Dict[FailureKind, Tuple[str, ...]] = {
    FailureKind.LOCKED: ("repository is already locked",),
    FailureKind.MISSING: ("Is there a repository",),
}

LOCK_DETAIL_MARKERS = ("locked by", "lock was created", "storage ID")


class RepositoryConnectError(Exception):
    """Raised when the repository cannot be reached or recovered."""

    def __init__(self, message: str, state: RepositoryConnectionState) -> None:
        super().__init__(message)
        self.state = state


@dataclass(frozen=True)
class GuardSettings:
    connect_attempts: int = 3
    retention_attempts: int = 2
    unlock_backoff_seconds: float = 2.0
    transient_backoff_seconds: float = 3.0


def classify_failure(output: str) -> FailureKind:
    for kind in (FailureKind.LOCKED, FailureKind.MISSING):
        if any(pattern in output for pattern in FAILURE_PATTERNS[kind]):
            return kind
    return FailureKind.OTHER_TRANSIENT


def _head(output: str, limit: int) -> List[str]:
    return [line for line in output.splitlines() if line.strip()][:limit]


class RepositoryGuard:
    def __init__(
        self,
        repository: SnapshotRepository,
        settings: Optional[GuardSettings] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._settings = settings or GuardSettings()
        self._log = logger or LOG
        self._sleep = sleep
        self.state = RepositoryConnectionState.UNKNOWN

    def connect(self) -> RepositoryConnectionState:
        """Probe the repository until it is reachable.

        Raises :class:`RepositoryConnectError` when the attempt budget is
        exhausted, an unlock fails, or a missing repository cannot be created.
        """
        self.state = RepositoryConnectionState.UNKNOWN
        attempts = self._settings.connect_attempts

        for attempt in range(1, attempts + 1):
            self._log.info("Connecting to repository (attempt %d/%d)", attempt, attempts)
            result = self._repository.probe()
            if result.ok:
                self._log.info("Repository connection established")
                self.state = RepositoryConnectionState.CONNECTED
                return self.state

            kind = classify_failure(result.output)
            has_next = attempt < attempts

            if kind is FailureKind.LOCKED:
                self.state = RepositoryConnectionState.LOCKED
                self._log.warning("Repository is locked, attempting unlock")
                self._log_lock_details(result.output)
                if self._repository.unlock() != 0:
                    self._log.error("Automatic unlock failed; run 'restic unlock' manually")
                    raise RepositoryConnectError("Repository is locked and could not be unlocked", self.state)
                self._log.info("Repository unlocked")
                if has_next:
                    self._sleep(self._settings.unlock_backoff_seconds)
                continue

            if kind is FailureKind.MISSING:
                self.state = RepositoryConnectionState.MISSING
                self._log.warning("Repository does not exist, initialising")
                if self._repository.init() != 0:
                    self._log.error(
                        "Repository initialisation failed; check credentials, bucket and network access"
                    )
                    raise RepositoryConnectError("Repository initialisation failed", self.state)
                self._log.info("Repository initialised")
                self.state = RepositoryConnectionState.CONNECTED
                return self.state

            self.state = RepositoryConnectionState.FAILED
            self._log.warning("Repository connection failed:")
            for line in _head(result.output, 5):
                self._log.warning("  %s", line)
            if has_next:
                self._sleep(self._settings.transient_backoff_seconds)

        self._log.error("Unable to connect to repository after %d attempts", attempts)
        if self.state is not RepositoryConnectionState.LOCKED:
            self.state = RepositoryConnectionState.FAILED
        raise RepositoryConnectError("Cannot connect to repository", self.state)

    def run_with_unlock(self, operation: Callable[[], CommandResult], description: str) -> bool:
        """Run a non-critical operation, recovering only from stale locks.

        Returns False when the operation is abandoned; never raises.
        """
        attempts = self._settings.retention_attempts
        for attempt in range(1, attempts + 1):
            self._log.info("Running %s (attempt %d/%d)", description, attempt, attempts)
            result = operation()
            if result.ok:
                self._log.info("%s completed", description.capitalize())
                return True

            if classify_failure(result.output) is FailureKind.LOCKED:
                self._log.warning("Repository locked during %s, attempting unlock", description)
                if self._repository.unlock() != 0:
                    self._log.warning("Unlock failed, abandoning %s", description)
                    return False
                self._log.info("Repository unlocked, retrying %s", description)
                if attempt < attempts:
                    self._sleep(self._settings.unlock_backoff_seconds)
                continue

            self._log.warning("%s failed:", description.capitalize())
            for line in _head(result.output, 3):
                self._log.warning("  %s", line)
            return False

        self._log.warning("%s still locked after %d attempts", description.capitalize(), attempts)
        return False

    def _log_lock_details(self, output: str) -> None:
        for line in output.splitlines():
            if any(marker in line for marker in LOCK_DETAIL_MARKERS):
                self._log.warning("  %s", line.strip())
