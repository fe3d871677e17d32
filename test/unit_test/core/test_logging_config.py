"""
Unit tests for the logging configuration module.

Covers handler setup, formats, file logging and the per-module levels.
"""

import logging
from pathlib import Path

import pytest

from webpilot_ai.core import logging_config
from webpilot_ai.core.logging_config import (
    DETAILED_FORMAT,
    JSON_FORMAT,
    SIMPLE_FORMAT,
    _module_levels,
    get_logger,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Put the root logger back the way the test found it."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _stream_handlers():
    return [
        h
        for h in logging.getLogger().handlers
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
    ]


class TestSetupLogging:
    def test_console_handler_uses_requested_level(self):
        setup_logging(log_level="warning", enable_file=False)

        handlers = _stream_handlers()
        assert len(handlers) == 1
        assert handlers[0].level == logging.WARNING
        assert logging.getLogger().level == logging.DEBUG

    def test_setup_replaces_existing_handlers(self):
        setup_logging(log_level="INFO", enable_file=False)
        setup_logging(log_level="INFO", enable_file=False)

        assert len(logging.getLogger().handlers) == 1

    @pytest.mark.parametrize(
        ("log_format", "expected"),
        [
            ("simple", SIMPLE_FORMAT),
            ("detailed", DETAILED_FORMAT),
            ("json", JSON_FORMAT),
            ("unknown", DETAILED_FORMAT),
        ],
    )
    def test_formats(self, log_format: str, expected: str):
        setup_logging(log_level="INFO", log_format=log_format, enable_file=False)

        assert _stream_handlers()[0].formatter._fmt == expected

    def test_file_handler_written_when_enabled(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(logging_config, "ENABLE_FILE_LOGGING", True)
        monkeypatch.setattr(logging_config, "LOG_FILE_DIR", str(tmp_path / "logs"))

        setup_logging(log_level="INFO", enable_file=True)

        file_handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].level == logging.DEBUG
        assert Path(file_handlers[0].baseFilename) == tmp_path / "logs" / "webpilot_ai.log"

    def test_file_handler_skipped_when_globally_disabled(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(logging_config, "ENABLE_FILE_LOGGING", False)
        monkeypatch.setattr(logging_config, "LOG_FILE_DIR", str(tmp_path / "logs"))

        setup_logging(log_level="INFO", enable_file=True)

        assert not any(isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)
        assert not (tmp_path / "logs").exists()

    def test_module_levels_applied(self, monkeypatch):
        monkeypatch.setattr(logging_config, "MODULE_LOG_LEVELS", _module_levels(True))

        setup_logging(log_level="INFO", enable_file=False)

        assert logging.getLogger("webpilot_ai.agent_core.runtime").level == logging.DEBUG
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


class TestModuleLevels:
    def test_debug_agent_raises_agent_core_to_debug(self):
        levels = _module_levels(True)

        assert levels["webpilot_ai.agent_core"] == "DEBUG"
        assert levels["webpilot_ai.agent_core.planning"] == "DEBUG"
        assert levels["webpilot_ai.server.api"] == "DEBUG"
        assert levels["webpilot_ai.agent_core.gateway"] == "INFO"

    def test_default_levels(self):
        levels = _module_levels(False)

        assert levels["webpilot_ai.agent_core"] == "INFO"
        assert levels["webpilot_ai.server.api"] == "INFO"
        assert levels["httpx"] == "WARNING"


def test_get_logger_returns_named_logger():
    logger = get_logger("webpilot_ai.agent_core.worker")

    assert logger.name == "webpilot_ai.agent_core.worker"
    assert logger is logging.getLogger("webpilot_ai.agent_core.worker")
