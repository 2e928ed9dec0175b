from __future__ import annotations

import os
from pathlib import Path

CONFIG_FILE_ENV = "PVETEMPLATE_CONFIG"
STATE_DIR_ENV = "PVETEMPLATE_STATE_DIR"
LOG_FILE_ENV = "PVETEMPLATE_LOG_FILE"
LOCK_FILE_ENV = "PVETEMPLATE_LOCK_FILE"
SYSTEM_CONFIG_FILE = Path("/etc/pvetemplate.conf")
SYSTEM_STATE_DIR = Path("/var/lib/pvetemplate")
SYSTEM_LOCK_FILE = Path("/run/lock/pvetemplate.lock")


def _is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def default_config_file() -> Path | None:
    override = os.getenv(CONFIG_FILE_ENV)
    if override:
        return Path(override).expanduser()
    for candidate in (
        SYSTEM_CONFIG_FILE,
        Path.home() / ".config" / "pvetemplate.conf",
    ):
        if candidate.is_file():
            return candidate
    return None


def default_state_dir() -> Path:
    override = os.getenv(STATE_DIR_ENV)
    if override:
        return Path(override).expanduser()
    if _is_root():
        return SYSTEM_STATE_DIR
    return Path.home() / ".pvetemplate"


def default_log_file(state_dir: Path) -> Path:
    override = os.getenv(LOG_FILE_ENV)
    if override:
        return Path(override).expanduser()
    return state_dir / "logs" / "pvetemplate.log"


def default_lock_file(state_dir: Path) -> Path:
    override = os.getenv(LOCK_FILE_ENV)
    if override:
        return Path(override).expanduser()
    if _is_root() or os.access(SYSTEM_LOCK_FILE.parent, os.W_OK):
        return SYSTEM_LOCK_FILE
    return state_dir / "pvetemplate.lock"
