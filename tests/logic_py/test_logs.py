from __future__ import annotations

import io
import logging
import re
from pathlib import Path

import pytest
import structlog

from pvetemplate import logs


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    structlog.reset_defaults()


class FakeTty(io.StringIO):
    def isatty(self) -> bool:
        return True


def test_use_color_modes(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("NO_COLOR", raising=False)
    assert logs.use_color("always", io.StringIO()) is True
    assert logs.use_color("never", FakeTty()) is False
    assert logs.use_color("auto", FakeTty()) is True
    assert logs.use_color("auto", io.StringIO()) is False
    monkeypatch.setenv("NO_COLOR", "1")
    assert logs.use_color("auto", FakeTty()) is False


def test_run_log_lines_are_timestamped_and_level_tagged(tmp_path: Path):
    log_file = tmp_path / "logs" / "pvetemplate.log"
    stream = io.StringIO()
    logs.configure_logging(color="never", log_file=log_file, stream=stream)

    structlog.get_logger("pvetemplate.test").warning("Rolling back partially created VM", vmid=9999)
    logging.getLogger("pvetemplate.stdlib").info("plain stdlib record")
    for handler in logging.getLogger().handlers:
        handler.flush()

    text = log_file.read_text(encoding="utf-8")
    lines = text.splitlines()
    assert len(lines) == 2
    assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}", lines[0])
    assert "[warning" in lines[0]
    assert "vmid=9999" in lines[0]
    assert "[info" in lines[1]
    assert "\x1b[" not in text
    assert "Rolling back partially created VM" in stream.getvalue()


def test_reconfigure_replaces_previous_handlers(tmp_path: Path):
    logs.configure_logging(color="never", stream=io.StringIO())
    logs.configure_logging(color="never", stream=io.StringIO(), log_file=tmp_path / "run.log")
    ours = [h for h in logging.getLogger().handlers if getattr(h, logs._HANDLER_MARKER, False)]
    assert len(ours) == 2


def test_verbose_and_env_levels(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(logs.LOG_LEVEL_ENV, raising=False)
    logs.configure_logging(color="never", stream=io.StringIO(), verbose=True)
    assert logging.getLogger().level == logging.DEBUG

    monkeypatch.setenv(logs.LOG_LEVEL_ENV, "warning")
    logs.configure_logging(color="never", stream=io.StringIO())
    assert logging.getLogger().level == logging.WARNING


@pytest.mark.parametrize(
    ("value", "expected"),
    [("debug", logging.DEBUG), ("ERROR", logging.ERROR), ("bogus", logging.INFO), (None, logging.INFO)],
)
def test_level_names_resolve_case_insensitively(value, expected):
    assert logs._resolve_level(value, False) == expected
