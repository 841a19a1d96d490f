"""
Logging setup for the engine and the operation context carried by log calls.

Correlation identifiers (session, template, user, operation, strategy) are not
kept in ambient thread-local state: listeners run on their own threads and
would see the wrong values. Callers build an OperationContext and pass it down
explicitly; log calls attach it with ``extra=context.log_extra()`` and both
formatters render those fields.
"""
import json
import logging
import logging.config
import sys
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from assessment_engine.core.config import settings

# Record attributes rendered as context when present
CONTEXT_FIELDS = (
    "operation",
    "session_id",
    "template_id",
    "user_id",
    "strategy",
    "duration_ms",
)

# Third-party loggers that are too chatty at the engine's level
QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "urllib3": logging.WARNING,
}

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s%(context)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class OperationContext:
    """Correlation values threaded through assembly and scoring calls."""

    operation: str
    session_id: Optional[int] = None
    template_id: Optional[int] = None
    user_id: Optional[str] = None
    strategy: Optional[str] = None

    def with_values(self, **changes: Any) -> "OperationContext":
        return replace(self, **changes)

    def log_extra(self) -> Dict[str, Any]:
        """Set fields only, for the ``extra`` argument of logging calls."""
        return {key: value for key, value in asdict(self).items() if value is not None}


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Context fields attached to a record through ``extra``."""
    return {
        name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)
    }


class ContextTextFormatter(logging.Formatter):
    """Plain-text lines with any context fields appended in brackets."""

    def format(self, record: logging.LogRecord) -> str:
        context = record_context(record)
        record.context = (
            " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]" if context else ""
        )
        return super().format(record)


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation in production."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **record_context(record),
        }
        if record.levelno >= logging.ERROR:
            entry["source"] = f"{record.pathname}:{record.lineno}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _logging_dict(level: int, json_output: bool) -> Dict[str, Any]:
    loggers: Dict[str, Any] = {
        "assessment_engine": {"level": level, "handlers": ["console"], "propagate": False},
    }
    for name, quiet_level in QUIET_LOGGERS.items():
        loggers[name] = {"level": quiet_level, "handlers": ["console"], "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "text": {
                "()": ContextTextFormatter,
                "format": TEXT_FORMAT,
                "datefmt": TEXT_DATEFMT,
            },
            "json": {"()": JSONFormatter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "json" if json_output else "text",
                "stream": sys.stdout,
            },
        },
        "root": {"level": level, "handlers": ["console"]},
        "loggers": loggers,
    }


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Configure logging for an application embedding the engine.

    Level defaults to settings.LOG_LEVEL; JSON output defaults to on when
    settings.ENV is "production".
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    if json_output is None:
        json_output = settings.ENV == "production"
    logging.config.dictConfig(_logging_dict(numeric_level, json_output))
