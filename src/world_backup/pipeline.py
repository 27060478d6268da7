from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from .executor import BackupExecutor
from .models import STATUS_FAILED, BackupOutcome, BackupTarget
from .quiesce import QuiesceController, QuiesceError, QuiesceSettings, utcnow
from .runtime import ContainerRuntime

LOG = logging.getLogger(__name__)


class TargetPipeline:
    """Quiesce, back up and resume a single target."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        executor: BackupExecutor,
        quiesce_settings: Optional[QuiesceSettings] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._runtime = runtime
        self._executor = executor
        self._quiesce_settings = quiesce_settings or QuiesceSettings()
        self._log = logger or LOG
        self._sleep = sleep
        self._clock = clock

    def __call__(self, target: BackupTarget) -> BackupOutcome:
        return self.run(target)

    def run(self, target: BackupTarget) -> BackupOutcome:
        self._log.info("Starting backup of target %s", target.target_id)

        if not self._runtime.is_running(target.container):
            return BackupOutcome(target.target_id, STATUS_FAILED, f"container {target.container} is not running")

        controller = QuiesceController(
            target,
            self._runtime,
            settings=self._quiesce_settings,
            logger=self._log,
            sleep=self._sleep,
            clock=self._clock,
        )
        try:
            controller.pause()
            controller.flush()
            controller.wait_for_durable_signal()
            outcome = self._executor.run(target)
        except QuiesceError as exc:
            self._log.error("[%s] Could not quiesce world: %s", target.target_id, exc)
            outcome = BackupOutcome(target.target_id, STATUS_FAILED, str(exc))
        except Exception as exc:  # noqa: BLE001
            self._log.exception("[%s] Unexpected error during backup", target.target_id)
            outcome = BackupOutcome(target.target_id, STATUS_FAILED, str(exc))
        finally:
            # save-off may have half-applied even when it reported failure
            controller.resume()

        if outcome.success:
            self._log.info("[%s] Target backup finished", target.target_id)
        return outcome
