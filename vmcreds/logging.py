"""Logging configuration and audit sink for the VM credential manager."""

import logging
import logging.handlers
import sys
from typing import Any, Optional

from .config import Config
from .models import AuditEvent

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(config: Optional[Config] = None, name: str = "vmcreds",
                  log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the application logger with a console and a rotating file handler.

    Calling it again replaces the handlers, so the level and file always
    follow the latest configuration.
    """
    config = config or Config()
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    try:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file or config.LOG_FILE,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        logger.warning(f"Could not setup file logging: {e}")

    return logger


def format_fields(**fields: Any) -> str:
    """Render key/value fields as ``key: value`` pairs."""
    return ", ".join(f"{key}: {value}" for key, value in fields.items())


class AuditSink:
    """
    Write-only sink for leveled credential events.

    Every event goes to the wrapped logger. When a database is attached the
    event is also persisted to the audit table. Persisting is best effort:
    a failing or locked write is reported on the logger and never raised,
    and the database waits only AUDIT_WRITE_TIMEOUT seconds for a lock.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, database=None):
        self.logger = logger or logging.getLogger("vmcreds.audit")
        self.database = database

    def debug(self, message: str, **fields: Any):
        """Record a diagnostic event."""
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any):
        """Record a routine credential event."""
        self._emit(logging.INFO, message, fields)

    def error(self, message: str, **fields: Any):
        """Record a failed credential operation."""
        self._emit(logging.ERROR, message, fields)

    def _emit(self, level: int, message: str, fields: dict):
        """Log the event, then persist it when a database is attached."""
        if fields:
            self.logger.log(level, f"{message} - {format_fields(**fields)}")
        else:
            self.logger.log(level, message)

        if self.database is not None:
            event = AuditEvent(
                level=logging.getLevelName(level).lower(),
                message=message,
                fields={key: str(value) for key, value in fields.items()}
            )
            self.database.log_audit_event(event)


def log_credential_issued(audit: AuditSink, vm_name: str, strategy: str, filename: str = ""):
    """Log a credential issued for a virtual machine."""
    audit.info(
        "Credential ISSUED",
        virtual_machine=vm_name, strategy=strategy, filename=filename or "-"
    )


def log_credential_failed(audit: AuditSink, vm_name: str, operation: str, error: Exception):
    """Log a failed credential operation."""
    audit.error(
        "Credential operation FAILED",
        virtual_machine=vm_name, operation=operation, error=error
    )
