"""
Unit tests for logging setup.
"""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from gatebuild.log_setup import setup_logging


@pytest.fixture
def root_logger():
    logger = logging.getLogger()
    saved_handlers = list(logger.handlers)
    saved_level = logger.level
    yield logger
    for handler in list(logger.handlers):
        if handler not in saved_handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(saved_level)


def own_handlers(logger):
    return [handler for handler in logger.handlers if getattr(handler, "_gatebuild", False)]


class TestSetupLogging:
    """Test suite for setup_logging()."""

    def test_console_only(self, root_logger):
        setup_logging()
        handlers = own_handlers(root_logger)
        assert len(handlers) == 1
        assert handlers[0].level == logging.WARNING
        assert root_logger.level == logging.INFO

    def test_verbose(self, root_logger):
        setup_logging(verbose=True)
        assert own_handlers(root_logger)[0].level == logging.DEBUG
        assert root_logger.level == logging.DEBUG

    def test_log_file(self, root_logger, tmp_path):
        log_file = tmp_path / "state" / "gatebuild.log"
        setup_logging(log_file=log_file)
        logging.getLogger("gatebuild.test").info("configured")

        file_handlers = [h for h in own_handlers(root_logger) if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        file_handlers[0].flush()
        assert "configured" in log_file.read_text()

    def test_repeated_setup_replaces_handlers(self, root_logger, tmp_path):
        setup_logging(log_file=tmp_path / "a.log")
        setup_logging()
        assert len(own_handlers(root_logger)) == 1
