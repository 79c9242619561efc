from __future__ import annotations

from pathlib import Path

import pytest

from app.fircrawl import logging_utils, utils
from tests.test_requests_api import _configure_temp_paths


def test_crawler_event_formats_fields(monkeypatch: pytest.MonkeyPatch) -> None:
    lines: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lines.append)

    logging_utils._crawler_event("state", phase="job", job_id=3, to_status="stopped")

    assert lines == ["[CRAWLER][STATE] job_id=3, phase='job', to_status='stopped'"]


def test_crawler_event_uses_phase_as_label(monkeypatch: pytest.MonkeyPatch) -> None:
    lines: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lines.append)

    logging_utils._crawler_event(phase="session", to_state="ready")

    assert lines == ["[CRAWLER][SESSION] to_state='ready'"]


def test_crawler_event_never_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(message: str) -> None:
        raise OSError("disk gone")

    monkeypatch.setattr(logging_utils, "log_line", _boom)
    logging_utils._crawler_event("error", phase="persist")


def test_log_line_writes_to_configured_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    log_path = tmp_path / "logs" / "run.log"
    monkeypatch.setattr(utils, "_LOGGER_INITIALISED", False)
    utils._configure_logger(log_path)

    utils.log_line("hello from the crawler")

    for handler in utils.LOGGER.handlers:
        handler.flush()
    assert utils.get_current_log_path() == log_path
    assert "hello from the crawler" in log_path.read_text(encoding="utf-8")
