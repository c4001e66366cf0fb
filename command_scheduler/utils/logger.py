import os
import logging
import logging.config
import json
from datetime import datetime, timezone
import traceback
from typing import Dict, Any, Optional

# Default logging level
DEFAULT_LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Log format for different environments
LOG_FORMAT = os.getenv("LOG_FORMAT", "json" if os.getenv("ENVIRONMENT", "").lower() in ["production", "staging"] else "text")

LOG_FILE = os.getenv("LOG_FILE") or None


class JsonFormatter(logging.Formatter):
    """
    Custom formatter that outputs log records as JSON objects.

    Context bound through LoggerAdapter (worker_id, schedule_id, run_id, ...)
    is merged into the top level of each record.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as a JSON string."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "process": record.process,
            "thread": record.thread,
        }

        # Add exception info if available
        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        context = getattr(record, "context", None)
        if context:
            log_data.update(context)

        return json.dumps(log_data, default=str)


class ContextFormatter(logging.Formatter):
    """Text formatter that appends bound context as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = getattr(record, "context", None)
        if context:
            pairs = " ".join(f"{key}={value}" for key, value in context.items())
            message = f"{message} [{pairs}]"
        return message


# Third-party loggers and the level they are capped at; None follows log_level
LIBRARY_LOG_LEVELS = {
    "sqlalchemy.engine": "WARNING",
    "kombu": "WARNING",
    "celery": None,
}

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DETAILED_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (%(module)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    log_level: str = DEFAULT_LOG_LEVEL,
    log_format: str = LOG_FORMAT,
    log_file: Optional[str] = LOG_FILE,
) -> None:
    """
    Configure logging for a scheduler process (Celery worker, beat or a host
    running SchedulerLoop.start()).

    Args:
        log_level: The minimum log level to record (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for one JSON object per line, anything else for text
        log_file: Optional path of a rotating log file, written in addition to stdout
    """
    log_level = log_level.upper()
    as_json = log_format == "json"

    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": "json" if as_json else "text",
            "stream": "ext://sys.stdout",
        },
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "json" if as_json else "detailed",
            "filename": log_file,
            "maxBytes": 10485760,  # 10 MB
            "backupCount": 5,
            "encoding": "utf8",
        }
    handler_names = list(handlers)

    loggers: Dict[str, Dict[str, Any]] = {
        "": {"handlers": handler_names, "level": log_level},
    }
    for name, level in LIBRARY_LOG_LEVELS.items():
        loggers[name] = {"handlers": handler_names, "level": level or log_level, "propagate": False}

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JsonFormatter},
            "text": {"()": ContextFormatter, "format": TEXT_FORMAT, "datefmt": DATE_FORMAT},
            "detailed": {"()": ContextFormatter, "format": DETAILED_FORMAT, "datefmt": DATE_FORMAT},
        },
        "handlers": handlers,
        "loggers": loggers,
    })

    logging.getLogger("command_scheduler.logging").info(
        f"Logging configured with level={log_level}, format={log_format}, "
        f"file={log_file or 'disabled'}"
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name, typically the module name."""
    return logging.getLogger(name)


class LoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that attaches context to every log line.

    Usage:
        log = LoggerAdapter(get_logger(__name__), {"worker_id": "host:42"})
        log.bind(schedule_id=7).info("Lease acquired")
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.setdefault("extra", {})
        context = dict(self.extra)
        context.update(extra.get("context") or {})
        extra["context"] = context
        return msg, kwargs

    def bind(self, **kwargs) -> "LoggerAdapter":
        """Return a new adapter with additional context."""
        new_extra = dict(self.extra)
        new_extra.update(kwargs)
        return LoggerAdapter(self.logger, new_extra)
