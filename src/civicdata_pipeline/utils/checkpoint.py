"""
utils/checkpoint.py — Import-session checkpoint for status and crash recovery.

Persists the ImportSession (queue items + pending reconciliation jobs) as
JSON so that a second process (`civicdata status`, `civicdata dismiss`)
can read it while a drain is running, and so an interrupted drain leaves
a record of which items were still open.

Checkpoint file: ``<settings.checkpoint_dir>/import_session.json``
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog
from filelock import FileLock

from civicdata_shared.config import settings

log = structlog.get_logger(__name__)

_CHECKPOINT_NAME = "import_session.json"


def _paths(checkpoint_dir: str | Path | None) -> tuple[Path, Path]:
    directory = Path(checkpoint_dir or settings.checkpoint_dir)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / _CHECKPOINT_NAME
    return target, directory / f"{_CHECKPOINT_NAME}.lock"


def _read(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        log.warning("checkpoint_unreadable", path=str(path), error=str(exc))
        return {}
    return data if isinstance(data, dict) else {}


def save_session_snapshot(snapshot: dict[str, Any], checkpoint_dir: str | Path | None = None) -> None:
    """Write the session snapshot.

    Uses a file lock so a concurrent `dismiss` can't interleave a write.
    """
    path, lock = _paths(checkpoint_dir)
    with FileLock(lock):
        path.write_text(json.dumps(snapshot, indent=2, default=str))
    log.debug("checkpoint_saved", items=len(snapshot.get("items", [])))


def load_session_snapshot(checkpoint_dir: str | Path | None = None) -> dict[str, Any]:
    """Return the last snapshot, or {} if none was written."""
    path, lock = _paths(checkpoint_dir)
    with FileLock(lock):
        data = _read(path)
    if data:
        log.info("checkpoint_loaded", items=len(data.get("items", [])))
    return data


def drop_pending_jobs(job_ids: Iterable[str], checkpoint_dir: str | Path | None = None) -> list[str]:
    """Remove pending jobs by id from the stored snapshot; returns the ids removed.

    Re-reads under the lock so jobs added by a running drain are kept.
    """
    wanted = set(job_ids)
    path, lock = _paths(checkpoint_dir)
    with FileLock(lock):
        data = _read(path)
        jobs = data.get("pending_jobs", [])
        dropped = [job["id"] for job in jobs if job.get("id") in wanted]
        if not dropped:
            return []
        data["pending_jobs"] = [job for job in jobs if job.get("id") not in wanted]
        path.write_text(json.dumps(data, indent=2, default=str))
    log.info("checkpoint_jobs_dropped", job_ids=dropped)
    return dropped


def dismiss_pending_job(job_id: str, checkpoint_dir: str | Path | None = None) -> bool:
    """Drop one pending reconciliation job from the stored snapshot."""
    return bool(drop_pending_jobs([job_id], checkpoint_dir))


def clear_session_snapshot(checkpoint_dir: str | Path | None = None) -> None:
    """Remove the snapshot file."""
    path, lock = _paths(checkpoint_dir)
    with FileLock(lock):
        if path.exists():
            path.unlink()
    log.info("checkpoint_cleared")
