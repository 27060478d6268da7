from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .models import RetentionPolicy
from .runtime import COMMAND_NOT_FOUND

LOG = logging.getLogger(__name__)


class SnapshotRepositoryError(Exception):
    """Raised when repository output cannot be used."""


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class RepositoryCredentials:
    repository: str
    password: str
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: Optional[str] = None

    def as_env(self) -> Dict[str, str]:
        env = {
            "RESTIC_REPOSITORY": self.repository,
            "RESTIC_PASSWORD": self.password,
        }
        if self.aws_access_key_id:
            env["AWS_ACCESS_KEY_ID"] = self.aws_access_key_id
        if self.aws_secret_access_key:
            env["AWS_SECRET_ACCESS_KEY"] = self.aws_secret_access_key
        if self.aws_region:
            env["AWS_DEFAULT_REGION"] = self.aws_region
        return env


class SnapshotRepository(Protocol):
    def list_snapshots(self, no_lock: bool = True) -> List[Dict[str, Any]]:
        ...

    def backup(self, path: Path, host: str, tag: str) -> int:
        ...

    def forget_prune(self, policy: RetentionPolicy, tag: str) -> CommandResult:
        ...

    def unlock(self) -> int:
        ...

    def init(self) -> int:
        ...

    def probe(self) -> CommandResult:
        ...

    def latest_snapshots(self) -> CommandResult:
        ...


class ResticRepository:
    """Snapshot repository driven through the restic CLI.

    Credentials are handed to each child process through its own environment;
    the parent's ``os.environ`` is left untouched.
    """

    def __init__(
        self,
        credentials: RepositoryCredentials,
        binary: str = "restic",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._credentials = credentials
        self._binary = binary
        self._log = logger or LOG

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self._credentials.as_env())
        return env

    def _run(self, args: Sequence[str], *, capture: bool) -> CommandResult:
        cmd = [self._binary, *args]
        self._log.debug("Running %s", " ".join(cmd))
        try:
            if capture:
                result = subprocess.run(
                    cmd,
                    env=self._env(),
                    check=False,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                )
                return CommandResult(result.returncode, result.stdout or "")
            result = subprocess.run(cmd, env=self._env(), check=False)
            return CommandResult(result.returncode)
        except FileNotFoundError as exc:
            self._log.error("Command not found: %s", exc)
            return CommandResult(COMMAND_NOT_FOUND, str(exc))

    def list_snapshots(self, no_lock: bool = True) -> List[Dict[str, Any]]:
        args = ["snapshots", "--json"]
        if no_lock:
            args.append("--no-lock")
        cmd = [self._binary, *args]
        try:
            result = subprocess.run(cmd, env=self._env(), check=False, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise SnapshotRepositoryError(f"Command not found: {exc}") from exc
        if result.returncode != 0:
            raise SnapshotRepositoryError(
                f"restic snapshots exited with {result.returncode}: {result.stderr.strip()}"
            )
        try:
            snapshots = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise SnapshotRepositoryError(f"Unreadable snapshot listing: {exc}") from exc
        return snapshots or []

    def backup(self, path: Path, host: str, tag: str) -> int:
        args = ["backup", "--verbose", "--host", host, "--tag", tag, str(path)]
        return self._run(args, capture=False).returncode

    def forget_prune(self, policy: RetentionPolicy, tag: str) -> CommandResult:
        args = [
            "forget",
            "--prune",
            "--keep-daily",
            str(policy.keep_daily),
            "--keep-weekly",
            str(policy.keep_weekly),
            "--keep-monthly",
            str(policy.keep_monthly),
            "--keep-last",
            str(policy.keep_last),
            "--tag",
            tag,
        ]
        return self._run(args, capture=True)

    def unlock(self) -> int:
        return self._run(["unlock"], capture=True).returncode

    def init(self) -> int:
        return self._run(["init"], capture=True).returncode

    def probe(self) -> CommandResult:
        return self._run(["snapshots"], capture=True)

    def latest_snapshots(self) -> CommandResult:
        return self._run(["snapshots", "--latest", "1", "--compact", "--no-lock"], capture=True)
