from __future__ import annotations

import json
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class LeaseInfo:
    pid: int | None
    owner: str | None
    acquired_at: datetime | None
    raw: dict[str, Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    except OSError:
        return False


def read_lease(path: Path) -> LeaseInfo | None:
    """Return the lease currently on disk, or ``None`` when there is none."""
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if not text:
        return LeaseInfo(pid=None, owner=None, acquired_at=None, raw={})
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = int(text) if text.isdigit() else {}
    if isinstance(payload, int):
        payload = {"pid": payload}
    if not isinstance(payload, dict):
        payload = {}

    pid = payload.get("pid")
    if isinstance(pid, str) and pid.isdigit():
        pid = int(pid)
    if not isinstance(pid, int):
        pid = None
    acquired_at = None
    acquired_raw = payload.get("acquired_at")
    if isinstance(acquired_raw, str):
        try:
            acquired_at = datetime.fromisoformat(acquired_raw.replace("Z", "+00:00"))
        except ValueError:
            acquired_at = None
    owner = payload.get("owner")
    return LeaseInfo(
        pid=pid,
        owner=owner if isinstance(owner, str) else None,
        acquired_at=acquired_at,
        raw=payload,
    )


@dataclass
class WorkerLease:
    """Exclusive on-disk lease shared by every background worker of a workspace.

    The lease is a JSON file created with ``O_EXCL``. A lease left behind by a
    dead process, or one older than ``stale_after_s``, is cleared and taken over.
    """

    path: Path
    stale_after_s: float | None = 3600.0
    _fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        if self._fd is not None:
            return True
        if self._try_acquire():
            return True
        if self._clear_stale():
            return self._try_acquire()
        return False

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.close(self._fd)
        finally:
            self._fd = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "WorkerLease":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()

    def _try_acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        payload = {
            "pid": os.getpid(),
            "owner": f"{socket.gethostname()}:{os.getpid()}",
            "acquired_at": _utcnow().isoformat(),
        }
        os.write(fd, json.dumps(payload).encode("utf-8"))
        self._fd = fd
        return True

    def _clear_stale(self) -> bool:
        info = read_lease(self.path)
        if info is None or not self.is_stale(info):
            return False
        try:
            self.path.unlink()
            return True
        except OSError:
            return False

    def is_stale(self, info: LeaseInfo) -> bool:
        if info.pid is None or not _pid_alive(info.pid):
            return True
        if self.stale_after_s is None or info.acquired_at is None:
            return False
        return (_utcnow() - info.acquired_at).total_seconds() >= self.stale_after_s
