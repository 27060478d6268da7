from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Sequence

from .models import STATUS_FAILED, BackupOutcome, BackupRun, BackupTarget

LOG = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 2

Pipeline = Callable[[BackupTarget], BackupOutcome]


class TargetScheduler:
    """Runs every target pipeline, sequentially or with bounded concurrency.

    All targets are always attempted. One target's failure never cancels or
    delays another; the returned :class:`BackupRun` is built only after every
    pipeline has finished.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        parallel: bool = False,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._pipeline = pipeline
        self._parallel = parallel
        self._max_concurrency = max_concurrency
        self._log = logger or LOG

    def run(self, targets: Sequence[BackupTarget]) -> BackupRun:
        ids = [target.target_id for target in targets]
        duplicates = sorted({target_id for target_id in ids if ids.count(target_id) > 1})
        if duplicates:
            raise ValueError(f"Duplicate target id(s): {', '.join(duplicates)}")

        if self._parallel:
            run = self._run_parallel(targets)
        else:
            run = self._run_sequential(targets)
        self._log_summary(run)
        return run

    def _run_sequential(self, targets: Sequence[BackupTarget]) -> BackupRun:
        run = BackupRun()
        for target in targets:
            self._log.info("=" * 50)
            run.record(self._run_one(target))
        self._log.info("=" * 50)
        return run

    def _run_parallel(self, targets: Sequence[BackupTarget]) -> BackupRun:
        run = BackupRun()
        admission = threading.BoundedSemaphore(self._max_concurrency)
        lock = threading.Lock()
        self._log.info("Parallel backup enabled, max concurrency %d", self._max_concurrency)

        def worker(target: BackupTarget) -> None:
            with admission:
                outcome = self._run_one(target)
            with lock:
                run.record(outcome)
            if outcome.success:
                self._log.info("[parallel] Target %s succeeded", target.target_id)

        threads: List[threading.Thread] = []
        for target in targets:
            thread = threading.Thread(target=worker, args=(target,), name=f"backup-{target.target_id}")
            thread.start()
            threads.append(thread)

        for thread in threads:
            thread.join()
        return run

    def _run_one(self, target: BackupTarget) -> BackupOutcome:
        try:
            outcome = self._pipeline(target)
        except Exception as exc:  # noqa: BLE001
            self._log.exception("Target %s pipeline raised", target.target_id)
            return BackupOutcome(target.target_id, STATUS_FAILED, str(exc))
        if not outcome.success:
            self._log.error("Target %s failed: %s", target.target_id, outcome.detail)
        return outcome

    def _log_summary(self, run: BackupRun) -> None:
        self._log.info("Backup summary: %d succeeded, %d failed", run.success_count, len(run.failed_target_ids))
        if run.failed_target_ids:
            self._log.error("Failed targets: %s", ", ".join(run.failed_target_ids))
