"""
Logging setup.

Configures one stderr handler for the process. Context passed through
``extra=`` is appended to each line as ``key=value`` pairs.
"""

import logging
import os
import sys

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came from extra=
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class ContextFormatter(logging.Formatter):
    """Formatter that renders ``extra=`` context after the message."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if not context:
            return line
        rendered = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return f"{line} [{rendered}]"


def setup_logging(level: str = None) -> None:
    log_level = (level or os.getenv("CCOST_LOG_LEVEL", "WARNING")).upper()
    log_format = os.getenv("CCOST_LOG_FORMAT", DEFAULT_FORMAT)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ContextFormatter(log_format))
    logging.basicConfig(
        level=getattr(logging, log_level, logging.WARNING),
        handlers=[handler],
        force=True,
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
