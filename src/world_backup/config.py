from __future__ import annotations

import logging
import os
import socket
import stat
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadCronError, croniter
from pydantic import BaseModel, Field, root_validator, validator

from .guard import GuardSettings
from .models import BackupTarget, RetentionPolicy
from .quiesce import DEFAULT_SAVE_MARKERS, QuiesceSettings
from .repository import RepositoryCredentials
from .scheduler import DEFAULT_MAX_CONCURRENCY

LOG = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when the world backup configuration is invalid."""


class SecretRef(BaseModel):
    """Secret given inline, through an environment variable, or in a file."""

    value: Optional[str] = Field(default=None, description="Inline secret (discouraged).")
    env: Optional[str] = Field(default=None, description="Environment variable name.")
    file: Optional[Path] = Field(default=None, description="Path to a file containing the secret.")

    def resolve(self) -> Optional[str]:
        if self.value:
            return self.value
        if self.env:
            value = os.getenv(self.env)
            if value:
                return value
        if self.file:
            file_path = Path(self.file).expanduser()
            if file_path.exists():
                return file_path.read_text(encoding="utf-8").strip()
        return None


# --- Repository --------------------------------------------------------------


class RepositoryConfig(BaseModel):
    url: str
    password: SecretRef
    aws_access_key_id: Optional[SecretRef] = None
    aws_secret_access_key: Optional[SecretRef] = None
    aws_region: Optional[str] = None
    binary: str = "restic"

    @validator("url")
    def _require_url(cls, value: str) -> str:  # noqa: N805
        if not value.strip():
            raise ValueError("Repository url must not be empty.")
        return value

    def credentials(self) -> RepositoryCredentials:
        password = self.password.resolve()
        if not password:
            raise ConfigurationError("Repository password could not be resolved from configuration.")
        return RepositoryCredentials(
            repository=self.url,
            password=password,
            aws_access_key_id=self.aws_access_key_id.resolve() if self.aws_access_key_id else None,
            aws_secret_access_key=self.aws_secret_access_key.resolve() if self.aws_secret_access_key else None,
            aws_region=self.aws_region,
        )


# --- Policies ----------------------------------------------------------------


class RetentionConfig(BaseModel):
    keep_daily: int = Field(default=9, ge=0)
    keep_weekly: int = Field(default=14, ge=0)
    keep_monthly: int = Field(default=8, ge=0)
    keep_last: int = Field(default=12, ge=0)

    def to_policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            keep_daily=self.keep_daily,
            keep_weekly=self.keep_weekly,
            keep_monthly=self.keep_monthly,
            keep_last=self.keep_last,
        )


class QuiesceConfig(BaseModel):
    pause_command: List[str] = ["rcon-cli", "save-off"]
    flush_command: List[str] = ["rcon-cli", "save-all"]
    resume_command: List[str] = ["rcon-cli", "save-on"]
    save_markers: List[str] = list(DEFAULT_SAVE_MARKERS)
    poll_interval_seconds: float = Field(default=2.0, ge=0)
    max_poll_attempts: int = Field(default=30, ge=1)

    @validator("pause_command", "flush_command", "resume_command")
    def _require_command(cls, value: List[str]) -> List[str]:  # noqa: N805
        if not value:
            raise ValueError("Quiesce commands must not be empty.")
        return value

    def to_settings(self) -> QuiesceSettings:
        return QuiesceSettings(
            pause_command=tuple(self.pause_command),
            flush_command=tuple(self.flush_command),
            resume_command=tuple(self.resume_command),
            save_markers=tuple(self.save_markers),
            poll_interval_seconds=self.poll_interval_seconds,
            max_poll_attempts=self.max_poll_attempts,
        )


class GuardConfig(BaseModel):
    connect_attempts: int = Field(default=3, ge=1)
    retention_attempts: int = Field(default=2, ge=1)
    unlock_backoff_seconds: float = Field(default=2.0, ge=0)
    transient_backoff_seconds: float = Field(default=3.0, ge=0)

    def to_settings(self) -> GuardSettings:
        return GuardSettings(
            connect_attempts=self.connect_attempts,
            retention_attempts=self.retention_attempts,
            unlock_backoff_seconds=self.unlock_backoff_seconds,
            transient_backoff_seconds=self.transient_backoff_seconds,
        )


# --- Targets -----------------------------------------------------------------


class GlobalConfig(BaseModel):
    default_backup_host: Optional[str] = None
    parallel_backup: bool = False
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    @validator("max_concurrency")
    def _default_concurrency(cls, value: int) -> int:  # noqa: N805
        return value if value > 0 else DEFAULT_MAX_CONCURRENCY

    def resolved_host(self) -> str:
        return self.default_backup_host or socket.gethostname()


class TargetConfig(BaseModel):
    container_name: str
    world_dir: Path
    backup_tag: Optional[str] = None
    backup_host: Optional[str] = None
    enabled: bool = False
    description: str = ""
    retention: Optional[RetentionConfig] = None

    @validator("world_dir")
    def _expand_world_dir(cls, value: Path) -> Path:  # noqa: N805
        return value.expanduser()

    def to_target(self, name: str, default_host: str) -> BackupTarget:
        return BackupTarget(
            target_id=name,
            container=self.container_name,
            world_path=self.world_dir,
            tag=self.backup_tag or name,
            host=self.backup_host or default_host,
            enabled=self.enabled,
            description=self.description,
            retention=self.retention.to_policy() if self.retention else None,
        )


class NotificationsConfig(BaseModel):
    slack_webhook_env: Optional[str] = None

    def resolve_slack_webhook(self) -> Optional[str]:
        if not self.slack_webhook_env:
            return None
        return os.getenv(self.slack_webhook_env)


class SchedulerConfig(BaseModel):
    cron: str
    timezone: str = "UTC"
    run_on_startup: bool = True

    @validator("cron")
    def _validate_cron(cls, value: str) -> str:  # noqa: N805
        try:
            croniter(value, datetime.utcnow())
        except (CroniterBadCronError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @validator("timezone")
    def _validate_timezone(cls, value: str) -> str:  # noqa: N805
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:  # pragma: no cover - library errors
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value


class CoreConfig(BaseModel):
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    runtime_binary: str = "docker"
    repository: RepositoryConfig
    retention: RetentionConfig = RetentionConfig()
    quiesce: QuiesceConfig = QuiesceConfig()
    guard: GuardConfig = GuardConfig()
    targets: Dict[str, TargetConfig]
    notifications: NotificationsConfig = NotificationsConfig()
    scheduler: Optional[SchedulerConfig] = None

    @validator("targets")
    def _require_targets(cls, value: Dict[str, TargetConfig]) -> Dict[str, TargetConfig]:  # noqa: N805
        if not value:
            raise ValueError("At least one target must be configured.")
        return value

    @root_validator(skip_on_failure=True)
    def _unique_containers(cls, values: Dict[str, object]) -> Dict[str, object]:  # noqa: N805
        targets: Dict[str, TargetConfig] = values.get("targets") or {}
        seen: Dict[str, str] = {}
        for name, target in targets.items():
            if target.enabled and target.container_name in seen:
                raise ValueError(
                    f"Targets '{seen[target.container_name]}' and '{name}' both use container "
                    f"'{target.container_name}'."
                )
            if target.enabled:
                seen[target.container_name] = name
        return values

    @root_validator(skip_on_failure=True)
    def _consistent_tag_retention(cls, values: Dict[str, object]) -> Dict[str, object]:  # noqa: N805
        targets: Dict[str, TargetConfig] = values.get("targets") or {}
        by_tag: Dict[str, str] = {}
        for name, target in targets.items():
            tag = target.backup_tag or name
            if tag not in by_tag:
                by_tag[tag] = name
                continue
            other = targets[by_tag[tag]]
            if other.retention != target.retention:
                raise ValueError(
                    f"Targets '{by_tag[tag]}' and '{name}' share tag '{tag}' but declare different retention."
                )
        return values

    def all_targets(self) -> List[BackupTarget]:
        host = self.global_settings.resolved_host()
        return [cfg.to_target(name, host) for name, cfg in self.targets.items()]

    def enabled_targets(self) -> List[BackupTarget]:
        targets: List[BackupTarget] = []
        for target in self.all_targets():
            if not target.enabled:
                LOG.info("Skipping disabled target %s", target.target_id)
                continue
            targets.append(target)
        return targets


def load_config(path: Path) -> CoreConfig:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    if not path.is_file():
        raise ConfigurationError(f"{path} is not a regular file")

    mode = stat.S_IMODE(path.stat().st_mode)
    if mode & 0o077:
        LOG.warning("%s has insecure permissions (%o); run: chmod 600 %s", path, mode, path)

    with path.open("r", encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    try:
        return CoreConfig.parse_obj(raw)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(str(exc)) from exc


def default_config_path() -> Path:
    env_path = os.getenv("WORLD_BACKUP_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return Path("/etc/world-backup/config.yaml")
    return Path.home() / ".config" / "world-backup" / "config.yaml"


SAMPLE_CONFIG = """\
# world-backup configuration

global:
  # Host label recorded on snapshots when a target does not set one
  default_backup_host: "{hostname}"
  # Back up several targets at once
  parallel_backup: false
  # Maximum simultaneous targets when parallel_backup is enabled
  max_concurrency: 2

repository:
  # restic repository, e.g. s3:https://<account-id>.r2.cloudflarestorage.com/<bucket>
  url: "s3:https://your-account-id.r2.cloudflarestorage.com/world-backup"
  password:
    env: RESTIC_PASSWORD
  aws_access_key_id:
    env: AWS_ACCESS_KEY_ID
  aws_secret_access_key:
    env: AWS_SECRET_ACCESS_KEY
  aws_region: auto

retention:
  keep_daily: 9
  keep_weekly: 14
  keep_monthly: 8
  keep_last: 12

targets:
  survival:
    description: "Survival server"
    container_name: minecraft-survival
    world_dir: "{home}/docker/minecraft-survival"
    backup_tag: minecraft-survival
    enabled: true

  creative:
    description: "Creative server"
    container_name: minecraft-creative
    world_dir: "{home}/docker/minecraft-creative"
    backup_tag: minecraft-creative
    enabled: false
"""


def write_sample_config(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    content = SAMPLE_CONFIG.format(hostname=socket.gethostname(), home=Path.home())
    path.write_text(content, encoding="utf-8")
    path.chmod(0o600)
    LOG.info("Sample configuration written to %s", path)
