from __future__ import annotations

import fcntl
import os
import socket
from pathlib import Path

import structlog

from pvetemplate.errors import AlreadyRunning
from pvetemplate.state import current_utc_timestamp

log = structlog.get_logger(__name__)


def _host_name() -> str:
    name = socket.gethostname()
    return name.split(".")[0] if name else "unknown-host"


def _read_owner(lock_path: Path) -> dict[str, str]:
    try:
        text = lock_path.read_text(encoding="utf-8")
    except OSError:
        return {}
    owner: dict[str, str] = {}
    for line in text.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        owner[key.strip()] = value.strip()
    return owner


class SingleInstanceGuard:
    """Host-wide, non-blocking exclusive lock over one provisioning run.

    The lock is an flock on an open descriptor, so the kernel drops it when
    the process exits by any path. ``release`` only makes that explicit.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            owner = _read_owner(self.lock_path)
            raise AlreadyRunning(
                "Error: Another template provisioning run is already active on this host.\n"
                f"  lock file: {self.lock_path}\n"
                f"  owner pid: {owner.get('owner_pid', 'unknown')}\n"
                f"  started at: {owner.get('started_at', 'unknown')}"
            ) from exc
        except OSError:
            os.close(fd)
            raise
        self._fd = fd
        self._write_owner()
        log.debug("Acquired host lock", lock_file=str(self.lock_path))

    def _write_owner(self) -> None:
        assert self._fd is not None
        content = (
            f"owner_pid: {os.getpid()}\n"
            f"owner_host: {_host_name()}\n"
            f"started_at: {current_utc_timestamp()}\n"
        )
        os.ftruncate(self._fd, 0)
        os.pwrite(self._fd, content.encode("utf-8"), 0)

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        log.debug("Released host lock", lock_file=str(self.lock_path))

    def __enter__(self) -> "SingleInstanceGuard":
        self.acquire()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.release()
