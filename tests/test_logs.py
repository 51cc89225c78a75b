from unittest.mock import patch

import pytest

from p1bulkconsole import logs


@pytest.fixture
def log_directory(tmp_path, monkeypatch):
    monkeypatch.setitem(logs.logState, "directory", str(tmp_path))
    return tmp_path


def test_mask_id():
    assert logs.maskId("11111111-2222-3333-4444-555555555555") == "11111111..."
    assert logs.maskId(None) == ""


def test_read_log_content_without_file(log_directory):
    assert logs.readLogContent() == ""


def test_clear_log_file(log_directory):
    (log_directory / logs.infoLogFile).write_text("2026-10-19 - started\n", encoding="utf-8")

    assert logs.clearLogFile() is True
    assert "started" not in logs.readLogContent()


def test_clear_log_file_without_file(log_directory):
    assert logs.clearLogFile() is False


@patch("p1bulkconsole.logs.detailedFailureLogger")
@patch("p1bulkconsole.logs.infoLogger")
def test_log_client_entry_levels(mock_info_logger, mock_detailed_failure_logger):
    logs.logClientEntry({"level": "error", "message": "Render failed", "source": "console", "detail": "trace"})
    logs.logClientEntry({"level": "warn", "message": "Slow stream"})
    logs.logClientEntry({"message": "Page opened"})

    mock_info_logger.error.assert_called_once_with("CLIENT ERROR (console): Render failed")
    mock_detailed_failure_logger.error.assert_called_once_with("CLIENT ERROR (console) detail: trace")
    mock_info_logger.warning.assert_called_once_with("CLIENT WARNING (client): Slow stream")
    mock_info_logger.info.assert_called_once_with("CLIENT (client): Page opened")
