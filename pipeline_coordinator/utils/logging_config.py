"""
Console and file logging for the coordinator.

Records emitted while a stage invocation is bound (see
``structured_log.bind_invocation``) carry an ``invocation`` attribute of the
form ``unit/stage``, so interleaved runs stay readable on one console.
"""

import logging
import sys
from enum import Enum
from pathlib import Path
from typing import Optional

import colorama
import structlog
from colorama import Fore, Style

colorama.init(autoreset=True)

ROOT_LOGGER_NAME = "pipeline_coordinator"
DEFAULT_LOG_FILE = "logs/pipeline.log"


class LogLevel(str, Enum):
    """Console verbosity presets."""

    MINIMAL = "minimal"  # warnings and errors
    NORMAL = "normal"  # stage lifecycle at INFO
    DETAILED = "detailed"  # retries, progress, store internals
    FULL = "full"  # DEBUG with logger name and timestamps


_LEVELS = {
    LogLevel.MINIMAL: logging.WARNING,
    LogLevel.NORMAL: logging.INFO,
    LogLevel.DETAILED: logging.DEBUG,
    LogLevel.FULL: logging.DEBUG,
}


class InvocationContextFilter(logging.Filter):
    """Attach the bound unit/stage pair to every record as ``invocation``."""

    def filter(self, record: logging.LogRecord) -> bool:
        bound = structlog.contextvars.get_contextvars()
        unit = bound.get("unit_of_work_id")
        stage = bound.get("stage_name")
        record.invocation = f"{unit}/{stage}" if unit and stage else "-"
        return True


class ColoredFormatter(logging.Formatter):
    """Level-coloured console formatter."""

    COLORS = {
        "DEBUG": Fore.CYAN,
        "INFO": Fore.GREEN,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.RED + Style.BRIGHT,
    }

    def format(self, record):
        # Colour a copy; the file handler formats the same record afterwards.
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{self.COLORS.get(record.levelname, '')}{record.levelname}{Style.RESET_ALL}"
        return super().format(colored)


def setup_logging(
    level: LogLevel = LogLevel.NORMAL,
    log_to_file: bool = False,
    log_file: Optional[str] = None,
    verbose: bool = False,
    debug: bool = False,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Verbosity preset (or its string value)
        log_to_file: Also write DEBUG-and-up records to ``log_file``
        log_file: File path; defaults to logs/pipeline.log
        verbose: Force DEBUG on the console
        debug: Force DEBUG and the long console format

    Returns:
        The ``pipeline_coordinator`` logger
    """
    level = LogLevel(level)
    console_level = logging.DEBUG if (verbose or debug) else _LEVELS[level]

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.addFilter(InvocationContextFilter())
    if debug or level == LogLevel.FULL:
        console_handler.setFormatter(
            ColoredFormatter(
                "%(asctime)s | %(levelname)-8s | %(invocation)s | %(name)s | %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    else:
        console_handler.setFormatter(ColoredFormatter("%(levelname)-8s | %(invocation)s | %(message)s"))
    logger.addHandler(console_handler)

    logger_level = console_level
    if log_to_file:
        path = Path(log_file or DEFAULT_LOG_FILE)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(InvocationContextFilter())
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(invocation)s | %(name)s:%(lineno)d | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)
        logger_level = logging.DEBUG

    logger.setLevel(logger_level)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``pipeline_coordinator`` namespace (pass ``__name__``)."""
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
