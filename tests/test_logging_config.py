"""Tests for setup_logging."""

import logging
from pathlib import Path
from typing import Generator

import pytest

from httpchain.logging_config import LOGGER_NAME, setup_logging


@pytest.fixture(autouse=True)
def restore_logger() -> Generator[None, None, None]:
    """Undo handler/level/propagate changes so caplog keeps working in other tests."""
    logger = logging.getLogger(LOGGER_NAME)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


class TestSetupLogging:
    def test_console_handler_at_requested_level(self) -> None:
        logger = setup_logging(level="info")
        assert logger.name == "httpchain"
        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1
        assert logger.handlers[0].level == logging.INFO
        assert logger.propagate is False

    def test_repeated_setup_does_not_duplicate_handlers(self) -> None:
        setup_logging()
        logger = setup_logging()
        assert len(logger.handlers) == 1

    def test_file_handler_logs_debug(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "httpchain.log"
        logger = setup_logging(level="WARNING", log_file=log_file)

        assert logger.level == logging.DEBUG
        logging.getLogger("httpchain.client").debug("Call GET http://example.test/")
        for handler in logger.handlers:
            handler.flush()

        assert "Call GET http://example.test/" in log_file.read_text(encoding="utf-8")

    def test_module_loggers_are_children(self) -> None:
        logger = setup_logging(level="DEBUG")
        assert logging.getLogger("httpchain.transport").parent is logger
