"""
Lock management for barf.

A lock is a small JSON record at `<barf_dir>/<issue_id>.lock`:

    {"pid": 4242, "acquiredAt": "...", "state": "PLANNED", "mode": "build"}

A record is written to a temporary file and hard-linked into place, so
exactly one caller wins and no reader ever sees a half-written record. A
record is live only while its holder PID exists; dead or corrupt records
are deleted on sight, and sweep_stale_locks() clears every dead record at
startup.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from barf.errors import IssueLocked
from barf.lib.validate import validate, ValidationError

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"

# Records unreadable for less than this long may still be settling on disk
UNREADABLE_GRACE_SECONDS = 5


@dataclass
class LockInfo:
    """Contents of a lock record."""
    pid: int
    acquired_at: str
    state: str
    mode: str

    def to_json(self) -> str:
        return json.dumps({
            "pid": self.pid,
            "acquiredAt": self.acquired_at,
            "state": self.state,
            "mode": self.mode,
        })

    @classmethod
    def from_json(cls, text: str) -> "LockInfo":
        data = json.loads(text)
        validate(data, "lock")
        return cls(
            pid=data["pid"],
            acquired_at=data["acquiredAt"],
            state=data["state"],
            mode=data["mode"],
        )


def new_lock_info(state: str, mode: str, pid: int | None = None) -> LockInfo:
    """Build a lock record for the current process."""
    return LockInfo(
        pid=pid or os.getpid(),
        acquired_at=datetime.now(timezone.utc).isoformat(),
        state=state,
        mode=mode,
    )


def lock_path(lock_dir: Path, issue_id: str) -> Path:
    return lock_dir / f"{issue_id}{LOCK_SUFFIX}"


def pid_alive(pid: int) -> bool:
    """Return True if a process with this PID exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def _record_age(path: Path) -> float | None:
    try:
        return time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return None


def read_lock_if_alive(path: Path) -> LockInfo | None:
    """Return the lock record if its holder is alive.

    Dead-holder records are deleted and None is returned. An unreadable
    record is deleted once it is older than UNREADABLE_GRACE_SECONDS; a
    younger one is left in place and still counts as held.
    """
    try:
        info = LockInfo.from_json(path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, ValueError, ValidationError) as e:
        age = _record_age(path)
        if age is not None and age < UNREADABLE_GRACE_SECONDS:
            logger.debug(f"[LOCK] {path.name} is unreadable but recent, leaving it: {e}")
            return None
        logger.warning(f"[LOCK] Removing unreadable lock {path.name}: {e}")
        path.unlink(missing_ok=True)
        return None

    if pid_alive(info.pid):
        return info

    logger.info(f"[LOCK] Removing stale lock {path.name} (pid {info.pid} is gone)")
    path.unlink(missing_ok=True)
    return None


def _create_exclusive(path: Path, info: LockInfo) -> None:
    # The record is complete before its name appears; link() fails if the name exists
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    tmp.write_text(info.to_json())
    try:
        os.link(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def acquire_lock(lock_dir: Path, issue_id: str, info: LockInfo) -> None:
    """
    Atomically create the lock record for issue_id.

    If a record already exists and its holder is dead, the record is removed
    and creation is retried once.

    Raises:
        IssueLocked: if a live process holds the lock, or a recent record
            cannot be read yet
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    path = lock_path(lock_dir, issue_id)

    try:
        _create_exclusive(path, info)
    except FileExistsError:
        holder = read_lock_if_alive(path)
        if holder is not None:
            raise IssueLocked(issue_id, holder.pid) from None
        try:
            _create_exclusive(path, info)
        except FileExistsError:
            # Someone else won the retry, or the record was left in place
            holder = read_lock_if_alive(path)
            raise IssueLocked(issue_id, holder.pid if holder else None) from None

    logger.debug(f"[LOCK] Acquired {issue_id} (pid {info.pid}, mode {info.mode})")


def release_lock(lock_dir: Path, issue_id: str) -> None:
    """Delete the lock record. Never fails; a missing record is a no-op."""
    try:
        lock_path(lock_dir, issue_id).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"[LOCK] Failed to remove lock for {issue_id}: {e}")
        return
    logger.debug(f"[LOCK] Released {issue_id}")


def is_locked(lock_dir: Path, issue_id: str) -> bool:
    """Return True if a live process holds the lock."""
    path = lock_path(lock_dir, issue_id)
    if not path.exists():
        return False
    # Dead and old unreadable records are deleted here; anything left is held
    read_lock_if_alive(path)
    return path.exists()


def sweep_stale_locks(lock_dir: Path) -> int:
    """Delete every lock record whose holder is dead. Returns how many were removed."""
    if not lock_dir.is_dir():
        return 0

    removed = 0
    for path in lock_dir.glob(f"*{LOCK_SUFFIX}"):
        read_lock_if_alive(path)
        if not path.exists():
            removed += 1
    if removed:
        logger.info(f"[LOCK] Swept {removed} stale lock(s) from {lock_dir}")
    return removed


def list_live_locks(lock_dir: Path) -> dict[str, LockInfo]:
    """Map of issue_id -> LockInfo for every live lock."""
    if not lock_dir.is_dir():
        return {}

    live = {}
    for path in lock_dir.glob(f"*{LOCK_SUFFIX}"):
        info = read_lock_if_alive(path)
        if info is not None:
            live[path.name[:-len(LOCK_SUFFIX)]] = info
    return live
