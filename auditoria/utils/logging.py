"""
Logging for the audit engine.

Everything ends up in loguru: the engine's own modules log through
`logging.getLogger(__name__)` and the root handler forwards those records,
together with the ones from SQLAlchemy, httpx and litellm.
Source: https://github.com/Delgan/loguru
"""

import inspect
import logging
import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"

# Third-party loggers that are too chatty below WARNING
QUIET_LOGGERS = ("LiteLLM", "litellm", "httpx", "httpcore", "sqlalchemy.engine")


class InterceptHandler(logging.Handler):
    """Hand stdlib records to loguru, keeping the original caller."""

    def emit(self, record: logging.LogRecord) -> None:
        level: Union[str, int]
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip the logging module's own frames so {name}:{line} point at the caller
        frame, depth = inspect.currentframe(), 0
        while frame is not None and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_logs: bool = False,
) -> None:
    """
    Replace loguru's default sink and route stdlib logging into it.

    Args:
        level: Minimum level for every sink
        log_file: Also write to this file, rotated at 100 MB and kept 30 days
        json_logs: Serialize records as JSON lines instead of text
    """
    logger.remove()

    if json_logs:
        logger.add(sys.stderr, level=level, format="{message}", serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            format=FILE_FORMAT,
            serialize=json_logs,
            rotation="100 MB",
            retention="30 days",
            compression="zip",
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug(f"Logging ready (level={level}, json={json_logs}, file={log_file})")


def setup_logging_from_settings() -> None:
    """Apply LOG_LEVEL, LOG_FILE and LOG_JSON from AuditSettings."""
    from auditoria.core.config import get_audit_settings

    settings = get_audit_settings()
    setup_logging(level=settings.LOG_LEVEL, log_file=settings.LOG_FILE, json_logs=settings.LOG_JSON)


def get_logger(name: str = __name__):  # type: ignore[no-untyped-def]
    """Loguru logger bound to a module name, e.g. `get_logger(__name__)`."""
    return logger.bind(name=name)
