import logging

from pmta_import.logger import configure_logging, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_default_logger_name():
    assert get_logger().name == "PmtaImportService"


def test_configure_logging_reads_environment(monkeypatch):
    root = logging.getLogger()
    previous_level, previous_handlers = root.level, list(root.handlers)
    try:
        monkeypatch.setenv("PMTA_LOG_LEVEL", "debug")
        assert configure_logging() == logging.DEBUG
        assert root.level == logging.DEBUG

        assert configure_logging("no-such-level") == logging.INFO
        assert configure_logging("WARNING") == logging.WARNING
    finally:
        root.handlers = previous_handlers
        root.setLevel(previous_level)
