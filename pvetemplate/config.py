from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

from pvetemplate.errors import ValidationError
from pvetemplate.image import DEFAULT_HTTP_TIMEOUT_SECONDS, DEFAULT_MIRROR_URL
from pvetemplate.retry import DEFAULT_DELAY_SECONDS, DEFAULT_MAX_ATTEMPTS
from pvetemplate.volumes import DEFAULT_POLL_ATTEMPTS, DEFAULT_POLL_INTERVAL_SECONDS

ENV_PREFIX = "PVETEMPLATE_"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    vmid: int | None = None
    name: str = "ubuntu-2404-template"
    storage: str = "local-lvm"
    bridge: str = "vmbr0"
    memory: int = 2048
    cores: int = 1
    disk_extra_gib: int = 10
    release: str = "noble"
    arch: str = "amd64"
    ssh_key_file: str = ""
    guest_user: str = "ubuntu"
    require_ssh_key: bool = False
    bios: str = "ovmf"
    balloon: int | None = None
    mirror_url: str = DEFAULT_MIRROR_URL
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS
    download_attempts: int = DEFAULT_MAX_ATTEMPTS
    download_retry_delay_seconds: int = DEFAULT_DELAY_SECONDS
    volume_poll_attempts: int = DEFAULT_POLL_ATTEMPTS
    volume_poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    min_free_gib: int = 4


SETTING_KEYS = tuple(f.name for f in fields(Settings))
_INT_KEYS = {
    "memory",
    "cores",
    "disk_extra_gib",
    "http_timeout_seconds",
    "download_attempts",
    "download_retry_delay_seconds",
    "volume_poll_attempts",
    "volume_poll_interval_seconds",
    "min_free_gib",
}
_POSITIVE_KEYS = {"download_attempts", "volume_poll_attempts", "http_timeout_seconds"}
_AUTO_KEYS = {"vmid", "balloon"}


def strip_inline_comment(value: str) -> str:
    in_single = False
    in_double = False
    for idx, ch in enumerate(value):
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif ch == "#" and not in_single and not in_double:
            return value[:idx]
    return value


def parse_config_text(text: str) -> dict[str, str]:
    """Parse flat ``key: value`` lines; later keys win."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, raw_value = line.split(":", 1)
        value = strip_inline_comment(raw_value).strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1].strip()
        values[key.strip()] = value
    return values


def _coerce(key: str, raw: str, source: str) -> Any:
    if key in _AUTO_KEYS:
        if raw.lower() in {"", "auto"}:
            return None
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValidationError(f"Error: {source}: {key} must be an integer or 'auto'.") from exc
        if value < 0:
            raise ValidationError(f"Error: {source}: {key} is out of range: {value}.")
        return value
    if key == "require_ssh_key":
        lowered = raw.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValidationError(f"Error: {source}: require_ssh_key must be true or false.")
    if key in _INT_KEYS:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValidationError(f"Error: {source}: {key} must be an integer, got '{raw}'.") from exc
        if value < 0 or (key in _POSITIVE_KEYS and value == 0):
            raise ValidationError(f"Error: {source}: {key} is out of range: {value}.")
        return value
    return raw


def apply_overrides(settings: Settings, raw: Mapping[str, str], source: str) -> Settings:
    updates: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in SETTING_KEYS:
            raise ValidationError(f"Error: {source}: unknown setting '{key}'.")
        updates[key] = _coerce(key, value, source)
    return replace(settings, **updates)


def env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key in SETTING_KEYS:
        value = environ.get(ENV_PREFIX + key.upper())
        if value is not None:
            overrides[key] = value
    return overrides


def load_settings(
    config_file: Path | None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Defaults, then config file, then PVETEMPLATE_* environment variables."""
    settings = Settings()
    if config_file is not None:
        try:
            text = config_file.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ValidationError(f"Error: Config file not found: {config_file}") from exc
        except OSError as exc:
            raise ValidationError(f"Error: Could not read config file '{config_file}': {exc}") from exc
        settings = apply_overrides(settings, parse_config_text(text), str(config_file))
    env = os.environ if environ is None else environ
    return apply_overrides(settings, env_overrides(env), "environment")


def read_ssh_key(path: str) -> str:
    if not path:
        return ""
    key_path = Path(path).expanduser()
    try:
        return key_path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ValidationError(f"Error: Could not read SSH key file '{key_path}': {exc}") from exc
