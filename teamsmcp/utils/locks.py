"""Cross-process lock guarding the persistent browser profile."""

from __future__ import annotations

import json
import os
import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path


class ProfileLockError(RuntimeError):
    """Raised when another live process holds the browser profile."""

    def __init__(self, message: str, holder: ProfileLockInfo | None = None) -> None:
        super().__init__(message)
        self.holder = holder


@dataclass(frozen=True)
class ProfileLockInfo:
    """Metadata persisted in the lock file."""

    pid: int
    command: str
    created_at: float

    def to_json(self) -> str:
        return json.dumps(
            {
                "pid": self.pid,
                "command": self.command,
                "created_at": self.created_at,
            },
            sort_keys=True,
        )


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def read_lock_info(path: Path) -> ProfileLockInfo | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, TypeError, ValueError):
        return None
    try:
        return ProfileLockInfo(
            pid=int(payload["pid"]),
            command=str(payload["command"]),
            created_at=float(payload["created_at"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


def clear_profile_lock(path: Path, force: bool = False) -> bool:
    """Remove the lock file. Returns True if a file was removed.

    Raises ProfileLockError if the lock is active and force=False.
    """
    if not path.exists():
        return False
    info = read_lock_info(path)
    if not force and info and _pid_alive(info.pid):
        raise ProfileLockError(
            f"Lock is active (pid={info.pid}, command={info.command}). "
            "Use --force to remove it anyway.",
            holder=info,
        )
    path.unlink(missing_ok=True)
    return True


def _try_create(path: Path) -> int | None:
    try:
        return os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        return None


def _busy_error(path: Path, holder: ProfileLockInfo) -> ProfileLockError:
    return ProfileLockError(
        "the browser profile is in use by another process "
        f"(pid={holder.pid}, command={holder.command}). "
        f"If stale, clear it with `teamsmcp auth unlock --force` ({path}).",
        holder=holder,
    )


@contextmanager
def profile_lock(path: Path, command: str) -> Generator[ProfileLockInfo, None, None]:
    """Hold an exclusive lock file at *path* for the duration of the block.

    Never waits: a live holder raises ProfileLockError immediately. A lock
    left behind by a dead process is cleared once and acquisition retried.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    info = ProfileLockInfo(pid=os.getpid(), command=command, created_at=time.time())

    fd = _try_create(path)
    if fd is None:
        existing = read_lock_info(path)
        if existing and _pid_alive(existing.pid):
            raise _busy_error(path, existing)
        if existing:
            # Stale + readable lock.
            path.unlink(missing_ok=True)
            fd = _try_create(path)
            if fd is None:
                retry_existing = read_lock_info(path)
                if retry_existing and _pid_alive(retry_existing.pid):
                    raise _busy_error(path, retry_existing)
        if fd is None:
            raise ProfileLockError(
                "found stale or unreadable lock file. "
                f"Clear {path} with `teamsmcp auth unlock --force`."
            )

    try:
        os.write(fd, info.to_json().encode("utf-8"))
        os.close(fd)
        fd = None
        yield info
    finally:
        if fd is not None:
            os.close(fd)
        path.unlink(missing_ok=True)
