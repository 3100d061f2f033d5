"""Tests for logger setup: level selection and the optional log file."""

import io

import pytest

from modsync.logger import logger, resolve_level, setup_logger


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger.remove()


def test_level_precedence(monkeypatch):
    monkeypatch.delenv("MODSYNC_LOG_LEVEL", raising=False)
    monkeypatch.delenv("MODSYNC_DEBUG", raising=False)
    assert resolve_level() == "INFO"

    monkeypatch.setenv("MODSYNC_DEBUG", "1")
    assert resolve_level() == "DEBUG"

    monkeypatch.setenv("MODSYNC_LOG_LEVEL", "warning")
    assert resolve_level() == "WARNING"
    assert resolve_level("error") == "ERROR"


def test_console_respects_level_and_file_keeps_debug(tmp_path, monkeypatch):
    monkeypatch.delenv("MODSYNC_LOG_LEVEL", raising=False)
    monkeypatch.delenv("MODSYNC_DEBUG", raising=False)
    console = io.StringIO()
    log_file = tmp_path / "modsync.log"

    setup_logger(sink=console, log_file=str(log_file), enqueue=False, colorize=False)
    logger.debug("[解析] 第 1 层")
    logger.success("[完成] 已提交")
    logger.remove()

    assert "第 1 层" not in console.getvalue()
    assert "SUCCESS" in console.getvalue()
    text = log_file.read_text(encoding="utf-8")
    assert "第 1 层" in text
    assert "test_console_respects_level_and_file_keeps_debug" in text
