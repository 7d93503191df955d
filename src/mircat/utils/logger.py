"""
Logging setup for mircat, built on loguru.

Every module obtains its logger with ``get_logger(__name__)``. The process
entry point (CLI command or API server) calls ``configure_logging`` once,
before any relay is started. Records emitted through the standard
``logging`` module (uvicorn, asyncio) are routed into loguru as well.
"""

import logging
import sys
import traceback

from loguru import logger

from mircat.models.enums import LogLevel

ROOT_LOGGER_NAME = "mircat"

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]} - {message}"

# Loggers of the standard library that are forwarded into loguru
FORWARDED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "asyncio")

_configured = False

logger.configure(extra={"component": ROOT_LOGGER_NAME})


class InterceptHandler(logging.Handler):
    """Forward standard ``logging`` records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk back to the frame that issued the logging call
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(component=record.name).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def get_logger(name: str):
    """Get a loguru logger bound to a mircat component name."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logger.bind(component=name)


def _to_loguru_level(level: LogLevel) -> str:
    match level:
        case LogLevel.FULL | LogLevel.DEBUG:
            return "DEBUG"
        case LogLevel.INFO:
            return "INFO"
        case LogLevel.WARNING:
            return "WARNING"
    return "INFO"


def configure_logging(level: LogLevel = LogLevel.INFO, log_file: str = "") -> None:
    """
    Configure the loguru sinks.

    Args:
        level: Verbosity. FULL additionally renders extended tracebacks with
            variable values.
        log_file: Optional path; when set, records are also appended there
            without colors.
    """
    global _configured

    full = level == LogLevel.FULL
    loguru_level = _to_loguru_level(level)

    logger.remove()
    logger.add(
        sys.stderr,
        level=loguru_level,
        format=CONSOLE_FORMAT,
        backtrace=full,
        diagnose=full,
    )
    if log_file:
        logger.add(
            log_file,
            level=loguru_level,
            format=FILE_FORMAT,
            backtrace=full,
            diagnose=full,
            encoding="utf-8",
            buffering=1,
        )

    for name in FORWARDED_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False

    _configured = True


def is_configured() -> bool:
    return _configured


def format_traceback(exc: BaseException) -> str:
    """Render an exception with its traceback as a single string."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
