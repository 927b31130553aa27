"""
Unit tests for logging configuration.
"""

import logging

from pipeline_coordinator.utils.logging_config import (
    ROOT_LOGGER_NAME,
    ColoredFormatter,
    LogLevel,
    get_logger,
    setup_logging,
)
from pipeline_coordinator.utils.structured_log import bind_invocation, unbind_invocation


def test_setup_logging_levels():
    assert setup_logging(LogLevel.MINIMAL).level == logging.WARNING
    assert setup_logging(LogLevel.NORMAL).level == logging.INFO
    assert setup_logging(LogLevel.DETAILED).level == logging.DEBUG
    assert setup_logging(LogLevel.MINIMAL, debug=True).level == logging.DEBUG
    assert setup_logging("normal").level == logging.INFO


def test_setup_logging_replaces_handlers():
    setup_logging(LogLevel.NORMAL)
    logger = setup_logging(LogLevel.NORMAL)
    assert len(logger.handlers) == 1


def test_file_logging(tmp_path):
    log_file = tmp_path / "logs" / "pipeline.log"
    logger = setup_logging(LogLevel.MINIMAL, log_to_file=True, log_file=str(log_file))
    get_logger("tests.file").warning("written to file only")
    for handler in logger.handlers:
        handler.flush()
    assert "written to file only" in log_file.read_text(encoding="utf-8")


def test_get_logger_namespaces_under_package():
    assert get_logger("orchestration.coordinator").name == f"{ROOT_LOGGER_NAME}.orchestration.coordinator"
    assert get_logger(f"{ROOT_LOGGER_NAME}.db").name == f"{ROOT_LOGGER_NAME}.db"


def test_colored_formatter_leaves_record_untouched():
    record = logging.makeLogRecord({"levelname": "WARNING", "levelno": logging.WARNING, "msg": "hi"})
    formatted = ColoredFormatter("%(levelname)s %(message)s").format(record)
    assert "WARNING" in formatted
    assert record.levelname == "WARNING"


def test_records_carry_bound_invocation(tmp_path):
    log_file = tmp_path / "pipeline.log"
    logger = setup_logging(LogLevel.NORMAL, log_to_file=True, log_file=str(log_file))
    bind_invocation("uow-1", "search", "exec-1")
    try:
        get_logger("orchestration.coordinator").info("inside invocation")
    finally:
        unbind_invocation()
    get_logger("orchestration.coordinator").info("outside invocation")
    for handler in logger.handlers:
        handler.flush()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert "| uow-1/search |" in lines[0]
    assert "| - |" in lines[1]
