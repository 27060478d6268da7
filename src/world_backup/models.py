from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

STATUS_SUCCESS = "success"
STATUS_WARNING = "warning"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class RetentionPolicy:
    keep_daily: int = 0
    keep_weekly: int = 0
    keep_monthly: int = 0
    keep_last: int = 0

    def __post_init__(self) -> None:
        for name in ("keep_daily", "keep_weekly", "keep_monthly", "keep_last"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")


@dataclass(frozen=True)
class BackupTarget:
    """One configured world/container pair."""

    target_id: str
    container: str
    world_path: Path
    tag: str
    host: str
    enabled: bool = True
    description: str = ""
    retention: Optional[RetentionPolicy] = None

    def effective_retention(self, fallback: RetentionPolicy) -> RetentionPolicy:
        return self.retention or fallback


class RepositoryConnectionState(Enum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    LOCKED = "locked"
    MISSING = "missing"
    FAILED = "failed"


class FailureKind(Enum):
    LOCKED = "locked"
    MISSING = "missing"
    OTHER_TRANSIENT = "other_transient"


@dataclass
class BackupOutcome:
    target_id: str
    status: str
    detail: str = ""

    @property
    def success(self) -> bool:
        return self.status != STATUS_FAILED


@dataclass
class BackupRun:
    """Aggregate of every target pipeline in one run.

    Only meaningful once all pipelines have joined; the scheduler serializes
    calls to :meth:`record`.
    """

    success_count: int = 0
    failed_target_ids: List[str] = field(default_factory=list)
    outcomes: List[BackupOutcome] = field(default_factory=list)

    def record(self, outcome: BackupOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.success:
            self.success_count += 1
        else:
            self.failed_target_ids.append(outcome.target_id)

    @property
    def failed(self) -> bool:
        return bool(self.failed_target_ids)

    @property
    def total(self) -> int:
        return len(self.outcomes)
