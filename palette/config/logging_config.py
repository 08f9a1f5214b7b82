"""
Logging configuration.

Console logging with a human readable format in development and structured
JSON lines everywhere else.
"""

import json
import logging
import sys

from palette.config.config import Config

logger = logging.getLogger(__name__)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "environment": Config.APP_ENV,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra"):
            log_data.update(record.extra)

        return json.dumps(log_data, default=str)


def configure_logging(level: str | None = None) -> None:
    """
    Configure application logging.

    Sets up a single stdout handler on the root logger and quiets noisy
    third-party libraries. Safe to call more than once.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel((level or Config.LOG_LEVEL or "INFO").upper())
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    if Config.IS_DEVELOPMENT or Config.IS_TESTING:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    else:
        console_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(console_handler)

    # Set log levels for noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)

    logger.info(f"Logging configured (env={Config.APP_ENV})")
