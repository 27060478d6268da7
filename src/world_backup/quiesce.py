from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .models import BackupTarget
from .runtime import ContainerRuntime

LOG = logging.getLogger(__name__)

DEFAULT_SAVE_MARKERS: Tuple[str, ...] = ("Saved the game", "Saved the world")
# Some server builds only log the chunk storage flush.
CHUNK_STORAGE_MARKER = ("ThreadedAnvilChunkStorage", "Saved")


class QuiesceError(Exception):
    """Raised when writes cannot be paused or flushed."""


class QuiesceState(Enum):
    RUNNING = "running"
    PAUSE_REQUESTED = "pause_requested"
    PAUSED = "paused"
    FLUSH_REQUESTED = "flush_requested"
    WAITING_FOR_DURABLE_SIGNAL = "waiting_for_durable_signal"
    READY = "ready"
    RESUME_REQUESTED = "resume_requested"


@dataclass(frozen=True)
class QuiesceSettings:
    pause_command: Tuple[str, ...] = ("rcon-cli", "save-off")
    flush_command: Tuple[str, ...] = ("rcon-cli", "save-all")
    resume_command: Tuple[str, ...] = ("rcon-cli", "save-on")
    save_markers: Tuple[str, ...] = DEFAULT_SAVE_MARKERS
    poll_interval_seconds: float = 2.0
    max_poll_attempts: int = 30


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuiesceController:
    """Pauses, flushes and resumes writes for a single target."""

    def __init__(
        self,
        target: BackupTarget,
        runtime: ContainerRuntime,
        settings: Optional[QuiesceSettings] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._target = target
        self._runtime = runtime
        self._settings = settings or QuiesceSettings()
        self._log = logger or LOG
        self._sleep = sleep
        self._clock = clock
        self.state = QuiesceState.RUNNING
        self.history: List[QuiesceState] = [QuiesceState.RUNNING]

    def _transition(self, state: QuiesceState) -> None:
        self.state = state
        self.history.append(state)

    def pause(self) -> None:
        self._transition(QuiesceState.PAUSE_REQUESTED)
        self._log.info("[%s] Pausing world writes", self._target.target_id)
        status = self._runtime.exec(self._target.container, list(self._settings.pause_command))
        if status != 0:
            raise QuiesceError(f"pause command exited with {status}")
        self._transition(QuiesceState.PAUSED)

    def flush(self) -> None:
        self._transition(QuiesceState.FLUSH_REQUESTED)
        self._log.info("[%s] Flushing world to disk", self._target.target_id)
        status = self._runtime.exec(self._target.container, list(self._settings.flush_command))
        if status != 0:
            raise QuiesceError(f"flush command exited with {status}")

    def wait_for_durable_signal(self) -> bool:
        """Poll container logs for a save-complete marker.

        Returns False on timeout; the caller proceeds with the backup anyway.
        """
        self._transition(QuiesceState.WAITING_FOR_DURABLE_SIGNAL)
        target_id = self._target.target_id
        attempts = self._settings.max_poll_attempts
        since = self._clock()
        self._log.info("[%s] Waiting for world save to complete", target_id)

        for attempt in range(1, attempts + 1):
            try:
                logs = self._runtime.logs_since(self._target.container, since)
            except OSError as exc:
                self._log.warning("[%s] Could not read container logs: %s", target_id, exc)
                logs = ""
            if self._has_save_marker(logs):
                self._log.info("[%s] Save completion detected", target_id)
                self._transition(QuiesceState.READY)
                return True
            self._sleep(self._settings.poll_interval_seconds)
            self._log.debug("[%s] Waiting for save completion (%d/%d)", target_id, attempt, attempts)

        self._log.warning("[%s] No save completion signal seen, continuing with backup", target_id)
        self._transition(QuiesceState.READY)
        return False

    def resume(self) -> bool:
        self._transition(QuiesceState.RESUME_REQUESTED)
        self._log.info("[%s] Resuming world writes", self._target.target_id)
        try:
            status = self._runtime.exec(self._target.container, list(self._settings.resume_command))
        except Exception as exc:  # noqa: BLE001
            self._log.warning(
                "[%s] Resume command could not be run: %s; check the server manually",
                self._target.target_id,
                exc,
            )
            self._transition(QuiesceState.RUNNING)
            return False
        self._transition(QuiesceState.RUNNING)
        if status != 0:
            self._log.warning(
                "[%s] Resume command exited with %s; check the server manually",
                self._target.target_id,
                status,
            )
            return False
        return True

    def _has_save_marker(self, logs: str) -> bool:
        if any(marker in logs for marker in self._settings.save_markers):
            return True
        return all(part in logs for part in CHUNK_STORAGE_MARKER)
