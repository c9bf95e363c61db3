from __future__ import annotations

import logging
from pathlib import Path

import pytest

from telekinesis.logging_utils import get_default_log_dir, setup_logging


def test_default_log_dir_follows_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path))
    assert get_default_log_dir() == tmp_path / "telekinesis"


def test_setup_logging_writes_file_once(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "telekinesis.log"
    logger = setup_logging(level="DEBUG", log_file=log_file, add_console=False, logger_name="telekinesis.test.a")
    again = setup_logging(level="WARNING", log_file=log_file, add_console=False, logger_name="telekinesis.test.a")

    assert again is logger
    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING

    logger.warning("device %s lost", "vib1")
    for handler in logger.handlers:
        handler.flush()
    assert "device vib1 lost" in log_file.read_text(encoding="utf-8")

    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
