"""
Relay logging: JSON entries, trace ids, secret redaction
=======================================================

JSON-structured logging for the relay. Every approval request runs inside
its own trace context so that the outbound choice message, the inbound
callback and the caller's wait can be followed through the logs by one id.
"""

import json
import logging
import re
import secrets
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from opsrelay.config.settings import LoggingConfig

# Context variable to store trace_id for the current approval / notification
_trace_id_var: ContextVar[str | None] = ContextVar('trace_id', default=None)

_SECRET_PATTERNS = re.compile(
    r"(bot\d+:[A-Za-z0-9_-]+|\b\d{6,}:[A-Za-z0-9_-]{20,}|"
    r"Bearer\s+[A-Za-z0-9._~+/=-]+)",
    re.IGNORECASE,
)


def _redact_secrets(text: str) -> str:
    return _SECRET_PATTERNS.sub("[REDACTED]", text)


class StructuredLogger:
    """
    Per-component logger. Each call renders one JSON object (component,
    timestamp, level, trace id of the current approval, extra fields) and
    hands it to the stdlib logger ``opsrelay.<component>``.

    Example output:
    {
        "timestamp": "2026-03-02T10:30:45.123Z",
        "level": "INFO",
        "trace_id": "abc123",
        "component": "ApprovalCoordinator",
        "message": "Approval resolved",
        "approval_id": "9f2c1a7e",
        "option": "yes"
    }
    """

    def __init__(self, component: str, logger: logging.Logger | None = None) -> None:
        """
        Initialize structured logger

        Args:
            component: Component name (e.g., 'MessageBatcher', 'DeliveryClient')
            logger: Optional existing logger (creates new if not provided)
        """
        self.component = component
        self.logger = logger or logging.getLogger(f"opsrelay.{component}")

    def _log(self, level: str, message: str, *args, exc_info: bool = False, **kwargs) -> None:
        """
        Internal logging method

        Args:
            level: Log level ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
            message: Log message, %-style placeholders filled from *args
            **kwargs: Additional structured fields
        """
        if not self.logger.isEnabledFor(getattr(logging, level)):
            return

        if args:
            try:
                message = message % args
            except (TypeError, ValueError):
                message = " ".join([message, *map(str, args)])

        log_entry = {
            'timestamp': datetime.now(tz=UTC).isoformat(),
            'level': level,
            'component': self.component,
            'message': _redact_secrets(message),
        }

        trace_id = _trace_id_var.get()
        if trace_id:
            log_entry['trace_id'] = trace_id

        # Add additional fields, redacting string values
        for k, v in kwargs.items():
            log_entry[k] = _redact_secrets(v) if isinstance(v, str) else v

        json_log = _redact_secrets(json.dumps(log_entry, default=str))

        log_method = getattr(self.logger, level.lower())
        log_method(json_log, exc_info=exc_info)

    def debug(self, message: str, *args, **kwargs) -> None:
        """Log debug message"""
        self._log('DEBUG', message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs) -> None:
        """Log info message"""
        self._log('INFO', message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs) -> None:
        """Log warning message"""
        self._log('WARNING', message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs) -> None:
        """Log error message"""
        self._log('ERROR', message, *args, **kwargs)

    def critical(self, message: str, *args, **kwargs) -> None:
        """Log critical message"""
        self._log('CRITICAL', message, *args, **kwargs)


class TraceContext:
    """
    Context manager for setting trace_id for one approval or notification

    Usage:
        with TraceContext(approval_id) as trace_id:
            # All logs within this context will include this trace_id
            logger.info("Sending choice request")
    """

    def __init__(self, trace_id: str | None = None) -> None:
        self.trace_id = trace_id or self._generate_trace_id()
        self.token = None

    def __enter__(self) -> str:
        self.token = _trace_id_var.set(self.trace_id)
        return self.trace_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _trace_id_var.reset(self.token)

    @staticmethod
    def _generate_trace_id() -> str:
        """Short random id for notifications that have no approval id"""
        return secrets.token_hex(4)


def get_current_trace_id() -> str | None:
    return _trace_id_var.get()


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def get_logger(component: str) -> StructuredLogger:
    """
    Get a structured logger for a component

    Args:
        component: Component name

    Returns:
        StructuredLogger instance
    """
    return StructuredLogger(component)


def configure_logging(config: "LoggingConfig") -> None:
    """Install a stderr handler on the ``opsrelay`` logger tree.

    JSON entries are already rendered by StructuredLogger, so the json format
    prints the bare message; the text format prefixes time and level.
    """
    root = logging.getLogger("opsrelay")
    root.setLevel(config.level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    if config.format == "json":
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )
    root.addHandler(handler)
    root.propagate = False
