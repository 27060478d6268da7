from __future__ import annotations

import logging
from typing import Optional

import requests

from .models import BackupRun

LOG = logging.getLogger(__name__)


def format_summary(run: BackupRun) -> str:
    if not run.failed:
        return f"World backup succeeded for {run.success_count} target(s)."
    return (
        f"World backup finished with errors: {run.success_count} succeeded, "
        f"{len(run.failed_target_ids)} failed ({', '.join(run.failed_target_ids)})."
    )


def notify_slack(webhook_url: Optional[str], run: BackupRun, timeout: float = 10.0) -> bool:
    """Post a one-line run summary to a Slack incoming webhook."""
    if not webhook_url:
        return False
    try:
        response = requests.post(webhook_url, json={"text": format_summary(run)}, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        LOG.warning("Slack notification failed: %s", exc)
        return False
    return True
