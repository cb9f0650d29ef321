# src/dotseal/util/log.py: Structured logging with path context and redaction.
# Loggers live under the 'dotseal' namespace. A contextvar carries the tracked
# file currently being processed so per-file log lines can be correlated, and
# a redacting filter keeps secret material out of log output. JSON output is
# produced by python-json-logger when enabled in the configuration.

import contextvars
import logging
import sys
from typing import Any, Dict

from pythonjsonlogger.json import JsonFormatter

path_context = contextvars.ContextVar("path_context", default=None)

REDACTED_KEYS = {"passphrase", "key", "secret", "token"}

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
JSON_FORMAT = "%(asctime)s %(name)s %(levelname)s %(path)s %(message)s"


class ContextFilter(logging.Filter):
    """Injects the current tracked path into every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.path = path_context.get()
        return True


class RedactingFilter(logging.Filter):
    """A logging filter that redacts sensitive information."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, dict):
            record.args = self._redact_dict(record.args)
        return True

    def _redact_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        redacted_data = {}
        for key, value in data.items():
            if key in REDACTED_KEYS:
                redacted_data[key] = "[REDACTED]"
            elif isinstance(value, dict):
                redacted_data[key] = self._redact_dict(value)
            else:
                redacted_data[key] = value
        return redacted_data


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure the 'dotseal' logger hierarchy for a CLI run."""
    logger = logging.getLogger("dotseal")
    logger.setLevel(level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(JsonFormatter(JSON_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    handler.addFilter(ContextFilter())
    handler.addFilter(RedactingFilter())
    logger.addHandler(handler)
    logger.propagate = False
