from __future__ import annotations

import logging
import subprocess
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

LOG = logging.getLogger(__name__)

COMMAND_NOT_FOUND = 127


class ContainerRuntime(Protocol):
    def is_running(self, name: str) -> bool:
        ...

    def exec(self, name: str, argv: Sequence[str]) -> int:
        ...

    def logs_since(self, name: str, since: datetime) -> str:
        ...


class DockerRuntime:
    """Container runtime backed by the docker CLI."""

    def __init__(self, binary: str = "docker", logger: Optional[logging.Logger] = None) -> None:
        self._binary = binary
        self._log = logger or LOG

    def running_containers(self) -> List[str]:
        cmd = [self._binary, "ps", "--format", "{{.Names}}"]
        try:
            result = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except FileNotFoundError as exc:
            self._log.error("Command not found: %s", exc)
            return []
        if result.returncode != 0:
            self._log.error("docker ps failed: %s", result.stderr.strip())
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def is_running(self, name: str) -> bool:
        running = self.running_containers()
        if name in running:
            return True
        self._log.error("Container %s is not running", name)
        if running:
            self._log.info("Running containers: %s", ", ".join(running))
        return False

    def exec(self, name: str, argv: Sequence[str]) -> int:
        cmd = [self._binary, "exec", name, *argv]
        self._log.debug("Executing in %s: %s", name, " ".join(argv))
        try:
            # stdout/stderr pass through to our own streams
            return subprocess.run(cmd, check=False).returncode
        except FileNotFoundError as exc:
            self._log.error("Command not found: %s", exc)
            return COMMAND_NOT_FOUND

    def logs_since(self, name: str, since: datetime) -> str:
        cmd = [self._binary, "logs", "--since", since.isoformat(timespec="seconds"), name]
        try:
            result = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except FileNotFoundError as exc:
            self._log.error("Command not found: %s", exc)
            return ""
        return (result.stdout or "") + (result.stderr or "")
