from __future__ import annotations

import logging
from typing import Optional

from .models import STATUS_FAILED, STATUS_SUCCESS, STATUS_WARNING, BackupOutcome, BackupTarget
from .repository import SnapshotRepository, SnapshotRepositoryError

LOG = logging.getLogger(__name__)


class BackupExecutor:
    """Runs one snapshot per target and checks that it produced new data.

    The backup command's own exit status decides success. The snapshot count
    comparison only downgrades a success to a warning.
    """

    def __init__(self, repository: SnapshotRepository, logger: Optional[logging.Logger] = None) -> None:
        self._repository = repository
        self._log = logger or LOG

    def run(self, target: BackupTarget) -> BackupOutcome:
        self._log.info("[%s] Starting incremental backup of %s", target.target_id, target.world_path)
        before = self._count_snapshots(target)

        status = self._repository.backup(target.world_path, target.host, target.tag)
        if status != 0:
            self._log.error("[%s] Backup command exited with %s", target.target_id, status)
            return BackupOutcome(target.target_id, STATUS_FAILED, f"backup exited with {status}")

        after = self._count_snapshots(target)
        if before is None or after is None:
            return BackupOutcome(target.target_id, STATUS_WARNING, "snapshot count unavailable")

        if after > before:
            self._log.info("[%s] Backup complete, %d new snapshot(s)", target.target_id, after - before)
            return BackupOutcome(target.target_id, STATUS_SUCCESS, f"{after - before} new snapshot(s)")

        self._log.warning("[%s] Backup reported success but no new snapshot was detected", target.target_id)
        return BackupOutcome(target.target_id, STATUS_WARNING, "no new snapshot detected")

    def _count_snapshots(self, target: BackupTarget) -> Optional[int]:
        try:
            return len(self._repository.list_snapshots(no_lock=True))
        except SnapshotRepositoryError as exc:
            self._log.warning("[%s] Could not read snapshot count: %s", target.target_id, exc)
            return None
