from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from pvetemplate.errors import AlreadyRunning
from pvetemplate.locks import SingleInstanceGuard


def test_second_guard_fails_fast_while_first_is_held(tmp_path: Path):
    lock_path = tmp_path / "pvetemplate.lock"
    first = SingleInstanceGuard(lock_path)
    second = SingleInstanceGuard(lock_path)

    first.acquire()
    try:
        with pytest.raises(AlreadyRunning) as exc_info:
            second.acquire()
    finally:
        first.release()

    assert f"owner pid: {os.getpid()}" in str(exc_info.value)
    assert second.held is False


def test_guard_can_be_reacquired_after_release(tmp_path: Path):
    lock_path = tmp_path / "pvetemplate.lock"
    with SingleInstanceGuard(lock_path) as guard:
        assert guard.held is True
    assert guard.held is False

    with SingleInstanceGuard(lock_path) as again:
        assert again.held is True


def test_context_manager_releases_on_exception(tmp_path: Path):
    lock_path = tmp_path / "pvetemplate.lock"
    with pytest.raises(RuntimeError):
        with SingleInstanceGuard(lock_path):
            raise RuntimeError("pipeline failed")

    SingleInstanceGuard(lock_path).acquire()


def test_owner_metadata_written_and_cleared(tmp_path: Path):
    lock_path = tmp_path / "locks" / "pvetemplate.lock"
    guard = SingleInstanceGuard(lock_path)
    guard.acquire()
    content = lock_path.read_text(encoding="utf-8")
    assert f"owner_pid: {os.getpid()}" in content
    assert "started_at: " in content

    guard.release()
    assert lock_path.read_text(encoding="utf-8") == ""


def test_release_is_idempotent(tmp_path: Path):
    guard = SingleInstanceGuard(tmp_path / "pvetemplate.lock")
    guard.release()
    guard.acquire()
    guard.release()
    guard.release()


def test_lock_is_dropped_when_holder_process_exits(tmp_path: Path):
    lock_path = tmp_path / "pvetemplate.lock"
    holder = (
        "import fcntl, os, sys\n"
        f"fd = os.open({str(lock_path)!r}, os.O_RDWR | os.O_CREAT)\n"
        "fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)\n"
        "sys.exit(0)\n"
    )
    subprocess.run([sys.executable, "-c", holder], check=True)

    guard = SingleInstanceGuard(lock_path)
    guard.acquire()
    assert guard.held is True
    guard.release()
