from __future__ import annotations

from pathlib import Path

from pvetemplate import paths


def test_default_config_file_prefers_env_override(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv(paths.CONFIG_FILE_ENV, str(tmp_path / "custom.conf"))
    assert paths.default_config_file() == tmp_path / "custom.conf"


def test_default_config_file_falls_back_to_user_config(tmp_path: Path, monkeypatch) -> None:
    home = tmp_path / "home"
    (home / ".config").mkdir(parents=True)
    (home / ".config" / "pvetemplate.conf").write_text("cores: 2\n", encoding="utf-8")
    monkeypatch.delenv(paths.CONFIG_FILE_ENV, raising=False)
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setattr(paths, "SYSTEM_CONFIG_FILE", tmp_path / "etc" / "pvetemplate.conf")

    assert paths.default_config_file() == home / ".config" / "pvetemplate.conf"


def test_default_config_file_is_optional(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv(paths.CONFIG_FILE_ENV, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setattr(paths, "SYSTEM_CONFIG_FILE", tmp_path / "etc" / "pvetemplate.conf")

    assert paths.default_config_file() is None


def test_state_dir_for_root_and_regular_users(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv(paths.STATE_DIR_ENV, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))

    monkeypatch.setattr(paths, "_is_root", lambda: True)
    assert paths.default_state_dir() == paths.SYSTEM_STATE_DIR

    monkeypatch.setattr(paths, "_is_root", lambda: False)
    assert paths.default_state_dir() == tmp_path / "home" / ".pvetemplate"

    monkeypatch.setenv(paths.STATE_DIR_ENV, str(tmp_path / "state"))
    assert paths.default_state_dir() == tmp_path / "state"


def test_log_and_lock_files_live_under_state_dir(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv(paths.LOG_FILE_ENV, raising=False)
    monkeypatch.delenv(paths.LOCK_FILE_ENV, raising=False)
    monkeypatch.setattr(paths, "_is_root", lambda: False)
    monkeypatch.setattr(paths, "SYSTEM_LOCK_FILE", tmp_path / "missing" / "pvetemplate.lock")

    assert paths.default_log_file(tmp_path) == tmp_path / "logs" / "pvetemplate.log"
    assert paths.default_lock_file(tmp_path) == tmp_path / "pvetemplate.lock"


def test_root_uses_system_lock_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv(paths.LOCK_FILE_ENV, raising=False)
    monkeypatch.setattr(paths, "_is_root", lambda: True)

    assert paths.default_lock_file(tmp_path) == paths.SYSTEM_LOCK_FILE


def test_log_and_lock_env_overrides(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv(paths.LOG_FILE_ENV, str(tmp_path / "run.log"))
    monkeypatch.setenv(paths.LOCK_FILE_ENV, str(tmp_path / "run.lock"))

    assert paths.default_log_file(tmp_path / "state") == tmp_path / "run.log"
    assert paths.default_lock_file(tmp_path / "state") == tmp_path / "run.lock"
