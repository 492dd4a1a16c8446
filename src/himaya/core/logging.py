"""
Himaya Logging Configuration
Structured logging with a rich console handler and optional JSON log files.
"""

import json
import logging
import logging.handlers
from datetime import datetime
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

from himaya.core.config import settings


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_entry["extra"] = record.extra_data

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class HimayaLogger:
    """
    Application logging configuration
    """

    def __init__(self):
        self.console = Console(stderr=True)
        self.log_dir = settings.LOG_DIR

    def setup_logging(self) -> None:
        """
        Attach handlers to the ``himaya`` logger tree
        """
        level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

        app_logger = logging.getLogger("himaya")
        app_logger.setLevel(level)

        for handler in app_logger.handlers[:]:
            app_logger.removeHandler(handler)

        console_handler = RichHandler(
            console=self.console,
            rich_tracebacks=True,
            show_path=settings.DEBUG,
            show_time=True,
        )
        console_handler.setLevel(level)
        app_logger.addHandler(console_handler)

        if settings.LOG_TO_FILE:
            self.log_dir.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                self.log_dir / "himaya.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(JSONFormatter())

            # Security events get their own file for the audit pipeline
            audit_handler = logging.handlers.RotatingFileHandler(
                self.log_dir / "security-events.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=10,
            )
            audit_handler.setLevel(logging.INFO)
            audit_handler.setFormatter(JSONFormatter())
            audit_handler.addFilter(logging.Filter("himaya.audit"))

            error_handler = logging.handlers.RotatingFileHandler(
                self.log_dir / "error.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(JSONFormatter())

            app_logger.addHandler(file_handler)
            app_logger.addHandler(audit_handler)
            app_logger.addHandler(error_handler)

        logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)


_logger_instance: Optional[HimayaLogger] = None


def get_logger(name: str) -> logging.Logger:
    """
    Get logger instance with proper configuration
    """
    global _logger_instance

    if _logger_instance is None:
        _logger_instance = HimayaLogger()
        _logger_instance.setup_logging()

    return logging.getLogger(name)


class LoggerMixin:
    """
    Mixin to add logging capabilities to classes
    """

    @property
    def logger(self) -> logging.Logger:
        return get_logger(self.__class__.__module__ + "." + self.__class__.__name__)

    def log_with_context(
        self,
        level: int,
        message: str,
        extra_data: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log with additional context data, picked up by JSONFormatter
        """
        if not self.logger.isEnabledFor(level):
            return

        record = self.logger.makeRecord(
            name=self.logger.name,
            level=level,
            fn="",
            lno=0,
            msg=message,
            args=(),
            exc_info=None,
        )

        if extra_data:
            record.extra_data = extra_data

        self.logger.handle(record)
