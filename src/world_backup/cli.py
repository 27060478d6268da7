from __future__ import annotations

import argparse
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from croniter import croniter

from .config import (
    ConfigurationError,
    CoreConfig,
    SchedulerConfig,
    default_config_path,
    load_config,
    write_sample_config,
)
from .guard import RepositoryConnectError
from .logger import configure_logging, get_logger
from .notifications import notify_slack
from .orchestrator import BackupOrchestrator, DependencyError, NoEnabledTargetsError, check_dependencies

LOG = get_logger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Back up live world directories to a restic repository.")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to configuration YAML file (default: $WORLD_BACKUP_CONFIG or a per-user path).",
    )
    parser.add_argument(
        "--target",
        action="append",
        help="Specific target to back up (can be specified multiple times). Backs up all enabled targets when omitted.",
    )
    parser.add_argument(
        "--list-targets",
        action="store_true",
        help="List targets defined in the configuration and exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a sample configuration file to the config path and exit.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Log level (default INFO).",
    )
    return parser.parse_args(argv)


def load_configuration(path: Path, *, exit_on_error: bool = True) -> CoreConfig:
    try:
        return load_config(path)
    except ConfigurationError as exc:
        if exit_on_error:
            raise SystemExit(f"Configuration error: {exc}") from exc
        raise


def list_targets(config: CoreConfig) -> None:
    for name, target in config.targets.items():
        state = "enabled" if target.enabled else "disabled"
        print(f"{name}\t{state}\t{target.container_name}\t{target.world_dir}")


def run_targets(config: CoreConfig, target_names: Optional[List[str]]) -> int:
    try:
        check_dependencies(config.runtime_binary, config.repository.binary)
        orchestrator = BackupOrchestrator(config=config)
        run = orchestrator.run(target_names)
    except (ConfigurationError, DependencyError, NoEnabledTargetsError, RepositoryConnectError) as exc:
        LOG.error("Backup run aborted: %s", exc)
        return 1

    notify_slack(config.notifications.resolve_slack_webhook(), run)
    return 1 if run.failed else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    config_path = Path(args.config).expanduser() if args.config else default_config_path()

    if args.init_config or not config_path.exists():
        if config_path.exists():
            LOG.error("Refusing to overwrite existing configuration %s", config_path)
            return 1
        if not args.init_config:
            LOG.warning("Configuration file not found: %s", config_path)
        write_sample_config(config_path)
        LOG.info("Edit the repository credentials and targets, then run again")
        return 0

    config = load_configuration(config_path)

    if args.list_targets:
        list_targets(config)
        return 0

    target_names = args.target if args.target else None
    if config.scheduler:
        return run_with_scheduler(
            config_path=config_path,
            initial_config=config,
            target_names=target_names,
        )
    return run_targets(config, target_names)


class CronSchedule:
    """Computes run times for a ``scheduler`` block in its own timezone."""

    def __init__(self, settings: SchedulerConfig) -> None:
        self.settings = settings
        self.timezone = ZoneInfo(settings.timezone)

    def now(self) -> datetime:
        return datetime.now(self.timezone)

    def first_run(self) -> datetime:
        if self.settings.run_on_startup:
            return self.now()
        return self.next_after(self.now())

    def next_after(self, reference: datetime) -> datetime:
        return croniter(self.settings.cron, reference).get_next(datetime)


def run_with_scheduler(
    config_path: Path,
    initial_config: CoreConfig,
    target_names: Optional[List[str]],
    stop_event: Optional[threading.Event] = None,
) -> int:
    """Run backups on the configured cron schedule until stopped.

    The configuration is reloaded before every run. Returns the exit code of
    the last completed run, or 0 when no run happened.
    """
    if initial_config.scheduler is None:
        raise ValueError("Scheduler configuration is required")
    stop_event = stop_event or threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        LOG.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    config = initial_config
    schedule = CronSchedule(initial_config.scheduler)
    next_run = schedule.first_run()
    last_exit_code = 0
    LOG.info("First run scheduled for %s", next_run.isoformat())

    while not stop_event.is_set():
        now = schedule.now()
        if now < next_run:
            stop_event.wait(min((next_run - now).total_seconds(), 60))
            continue

        try:
            reloaded = load_configuration(config_path, exit_on_error=False)
        except ConfigurationError as exc:
            LOG.error("Failed to reload configuration: %s; continuing with previous settings", exc)
        else:
            if reloaded.scheduler is None:
                LOG.info("Scheduler removed from configuration; exiting loop")
                break
            config = reloaded
            schedule = CronSchedule(reloaded.scheduler)

        last_exit_code = run_targets(config, target_names)
        if last_exit_code != 0:
            LOG.warning("Scheduled run completed with errors (exit code %s)", last_exit_code)

        next_run = schedule.next_after(schedule.now())
        LOG.info("Next run scheduled for %s", next_run.isoformat())

    LOG.info("Scheduler stopped")
    return last_exit_code


if __name__ == "__main__":
    sys.exit(main())
