from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence

from .guard import RepositoryGuard
from .models import BackupTarget, RetentionPolicy
from .repository import SnapshotRepository

LOG = logging.getLogger(__name__)


class RetentionSweeper:
    """Prunes old snapshots once every target has been backed up.

    Each distinct tag is pruned with its target's own policy, or the shared
    one. Failures are only ever warnings.
    """

    def __init__(
        self,
        repository: SnapshotRepository,
        guard: RepositoryGuard,
        policy: RetentionPolicy,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._guard = guard
        self._policy = policy
        self._log = logger or LOG

    def policies_by_tag(self, targets: Sequence[BackupTarget]) -> Dict[str, RetentionPolicy]:
        policies: Dict[str, RetentionPolicy] = {}
        owners: Dict[str, str] = {}
        for target in targets:
            policy = target.effective_retention(self._policy)
            if target.tag not in policies:
                policies[target.tag] = policy
                owners[target.tag] = target.target_id
            elif policies[target.tag] != policy:
                self._log.warning(
                    "Targets %s and %s share tag %s with different retention; keeping the policy of %s",
                    owners[target.tag],
                    target.target_id,
                    target.tag,
                    owners[target.tag],
                )
        return dict(sorted(policies.items()))

    def sweep(self, targets: Sequence[BackupTarget]) -> bool:
        self._log.info("Pruning old snapshots")
        complete = True
        for tag, policy in self.policies_by_tag(targets).items():
            self._log.info(
                "Applying retention to tag %s (daily=%d weekly=%d monthly=%d last=%d)",
                tag,
                policy.keep_daily,
                policy.keep_weekly,
                policy.keep_monthly,
                policy.keep_last,
            )
            try:
                pruned = self._guard.run_with_unlock(
                    lambda: self._repository.forget_prune(policy, tag),
                    f"snapshot cleanup for tag {tag}",
                )
            except Exception as exc:  # noqa: BLE001
                self._log.warning("Snapshot cleanup for tag %s raised: %s", tag, exc)
                pruned = False
            complete = complete and pruned

        if not complete:
            self._log.warning("Snapshot cleanup failed, backups are complete")
        return complete
