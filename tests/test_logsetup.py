"""
Tests for log sink configuration.
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from unittest.mock import patch

import pytest

from hdaguard.logsetup import LOG_FORMAT, SUCCESS, level_from_name, setup_logging, tail_log


class TestLevels:
    """Tests for level names."""

    def test_success_level(self) -> None:
        """Test SUCCESS sits between INFO and WARNING."""
        assert logging.INFO < SUCCESS < logging.WARNING
        assert logging.getLevelName(SUCCESS) == "SUCCESS"

    @pytest.mark.parametrize(
        "name, level",
        [
            ("debug", logging.DEBUG),
            ("INFO", logging.INFO),
            ("success", SUCCESS),
            ("warning", logging.WARNING),
            ("error", logging.ERROR),
            ("nonsense", logging.INFO),
        ],
    )
    def test_level_from_name(self, name: str, level: int) -> None:
        """Test configured names resolve to logging levels."""
        assert level_from_name(name) == level


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_file_handler(self, temp_dir: Path) -> None:
        """Test a daily rotating file handler keeps the configured backups."""
        log_file = temp_dir / "logs" / "hda-guard.log"

        with patch("hdaguard.logsetup.logging.basicConfig") as basic_config:
            setup_logging("success", log_file=log_file, retention_days=7)

        kwargs = basic_config.call_args.kwargs
        assert kwargs["level"] == SUCCESS
        assert kwargs["format"] == LOG_FORMAT
        rotating = [
            h for h in kwargs["handlers"]
            if isinstance(h, logging.handlers.TimedRotatingFileHandler)
        ]
        try:
            assert len(rotating) == 1
            assert rotating[0].backupCount == 7
            assert rotating[0].when == "MIDNIGHT"
            assert log_file.parent.is_dir()
        finally:
            for handler in kwargs["handlers"]:
                if isinstance(handler, logging.FileHandler):
                    handler.close()

    def test_console_only(self) -> None:
        """Test no file handler without a log file."""
        with patch("hdaguard.logsetup.logging.basicConfig") as basic_config:
            setup_logging("info")

        handlers = basic_config.call_args.kwargs["handlers"]
        assert len(handlers) == 1
        assert not isinstance(handlers[0], logging.FileHandler)


class TestTailLog:
    """Tests for tail_log."""

    def test_tail(self, temp_dir: Path) -> None:
        """Test the last lines are returned in order."""
        log_file = temp_dir / "hda-guard.log"
        log_file.write_text("".join(f"line {i}\n" for i in range(100)))

        assert tail_log(log_file, lines=3) == ["line 97", "line 98", "line 99"]

    def test_short_file(self, temp_dir: Path) -> None:
        """Test a file shorter than the request is returned whole."""
        log_file = temp_dir / "hda-guard.log"
        log_file.write_text("only\n")

        assert tail_log(log_file) == ["only"]

    def test_missing_file(self, temp_dir: Path) -> None:
        """Test a missing log raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            tail_log(temp_dir / "missing.log")
