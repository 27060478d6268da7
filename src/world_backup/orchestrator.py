from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import time
from typing import Callable, List, Optional, Sequence

from .config import ConfigurationError, CoreConfig
from .executor import BackupExecutor
from .guard import RepositoryGuard
from .models import BackupRun, BackupTarget
from .pipeline import TargetPipeline
from .repository import ResticRepository, SnapshotRepository
from .retention import RetentionSweeper
from .runtime import ContainerRuntime, DockerRuntime
from .scheduler import TargetScheduler

LOG = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when a required external tool is unavailable."""


class NoEnabledTargetsError(Exception):
    """Raised when a run has nothing to back up."""


def check_dependencies(runtime_binary: str = "docker", repository_binary: str = "restic") -> None:
    missing = [binary for binary in (runtime_binary, repository_binary) if shutil.which(binary) is None]
    if missing:
        raise DependencyError(f"Missing required command(s): {', '.join(missing)}")

    if sys.platform.startswith("linux") and runtime_binary == "docker" and shutil.which("systemctl"):
        result = subprocess.run(["systemctl", "is-active", "--quiet", "docker"], check=False)
        if result.returncode != 0:
            raise DependencyError("Docker service is not running; start it with: sudo systemctl start docker")


class BackupOrchestrator:
    """Runs one backup pass over the configured targets."""

    def __init__(
        self,
        config: CoreConfig,
        runtime: Optional[ContainerRuntime] = None,
        repository: Optional[SnapshotRepository] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._log = logger or LOG
        self._runtime = runtime or DockerRuntime(binary=config.runtime_binary)
        if repository is None:
            repository = ResticRepository(
                config.repository.credentials(),
                binary=config.repository.binary,
            )
        self._repository = repository
        self._guard = RepositoryGuard(
            self._repository,
            settings=config.guard.to_settings(),
            logger=self._log,
            sleep=sleep,
        )
        pipeline = TargetPipeline(
            self._runtime,
            BackupExecutor(self._repository, logger=self._log),
            quiesce_settings=config.quiesce.to_settings(),
            logger=self._log,
            sleep=sleep,
        )
        self._scheduler = TargetScheduler(
            pipeline,
            parallel=config.global_settings.parallel_backup,
            max_concurrency=config.global_settings.max_concurrency,
            logger=self._log,
        )
        self._sweeper = RetentionSweeper(
            self._repository,
            self._guard,
            config.retention.to_policy(),
            logger=self._log,
        )

    def run(self, target_names: Optional[Sequence[str]] = None) -> BackupRun:
        targets = self.select_targets(target_names)
        if not targets:
            raise NoEnabledTargetsError("No enabled targets; set enabled: true on the targets to back up")

        self._guard.connect()
        self._log_configuration(targets)

        self._log.info("Starting backup of %d target(s)", len(targets))
        run = self._scheduler.run(targets)

        self._log_latest_snapshot()
        self._sweeper.sweep(targets)

        if run.failed:
            self._log.error("Backup run finished with errors")
        else:
            self._log.info("Backup run finished for all targets")
        return run

    def select_targets(self, target_names: Optional[Sequence[str]] = None) -> List[BackupTarget]:
        targets = self._config.enabled_targets()
        if not target_names:
            return targets

        name_set = set(target_names)
        missing = name_set - set(self._config.targets)
        if missing:
            missing_str = ", ".join(sorted(missing))
            raise ConfigurationError(f"Unknown target(s) requested: {missing_str}")
        return [target for target in targets if target.target_id in name_set]

    def _log_configuration(self, targets: Sequence[BackupTarget]) -> None:
        settings = self._config.global_settings
        policy = self._config.retention
        repository = self._config.repository.url
        if len(repository) > 50:
            repository = repository[:50] + "..."

        self._log.info("Parallel backup: %s", settings.parallel_backup)
        if settings.parallel_backup:
            self._log.info("Max concurrency: %d", settings.max_concurrency)
        self._log.info(
            "Retention: daily=%d weekly=%d monthly=%d last=%d",
            policy.keep_daily,
            policy.keep_weekly,
            policy.keep_monthly,
            policy.keep_last,
        )
        self._log.info("Repository: %s", repository)
        for target in targets:
            self._log.info(
                "Target %s: container=%s path=%s tag=%s host=%s",
                target.target_id,
                target.container,
                target.world_path,
                target.tag,
                target.host,
            )

    def _log_latest_snapshot(self) -> None:
        try:
            result = self._repository.latest_snapshots()
        except Exception as exc:  # noqa: BLE001
            self._log.warning("Could not read latest snapshot: %s", exc)
            return
        if not result.ok:
            self._log.warning("Could not read latest snapshot (exit %s)", result.returncode)
            return
        self._log.info("Latest snapshot:")
        for line in result.output.splitlines():
            if line.strip():
                self._log.info("  %s", line)
