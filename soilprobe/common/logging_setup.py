"""
Structured Logging Setup

Consistent logging configuration across the engine's services.
Uses JSON format for structured logs by default, plain text for development.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
import json

if TYPE_CHECKING:
    from soilprobe.services.device.models import ConnectionStatus, TransactionRecord

# LogRecord attributes that are not user-supplied context
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        # default=str keeps bytes/enums/datetimes from breaking a log line
        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "device.transaction", "polling")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"soilprobe.{service_name}")
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Level and format come from SOILPROBE_LOG_LEVEL / SOILPROBE_LOG_FORMAT.
    """
    log_level = os.environ.get("SOILPROBE_LOG_LEVEL", "INFO")
    json_format = os.environ.get("SOILPROBE_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def configure_service_loggers(log_level: str, json_format: bool) -> None:
    """Re-apply level/format to every logger already created under soilprobe.*"""
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("soilprobe."):
            setup_logging(name[len("soilprobe."):], log_level, json_format)


def log_transaction(logger: Any, record: "TransactionRecord") -> None:
    """Log one request/response cycle at a level matching its outcome"""
    from soilprobe.services.device.models import TransactionOutcome

    extra = {
        "transaction_id": record.transaction_id,
        "outcome": record.outcome.value,
        "elapsed_ms": round(record.elapsed_ms, 1),
        "request": record.request_hex,
        "response": record.response_hex,
    }
    message = (
        f"Transaction {record.transaction_id} {record.outcome.value} "
        f"in {record.elapsed_ms:.0f}ms"
    )
    if record.detail:
        message += f": {record.detail}"

    if record.outcome == TransactionOutcome.SUCCESS:
        logger.debug(message, extra=extra)
    elif record.outcome == TransactionOutcome.TRANSPORT_ERROR:
        logger.error(message, extra=extra)
    elif record.outcome == TransactionOutcome.ABORTED:
        logger.info(message, extra=extra)
    else:
        logger.warning(message, extra=extra)


def log_connection_change(
    logger: Any,
    old: "ConnectionStatus",
    new: "ConnectionStatus",
    reason: str | None = None,
    device: str | None = None,
) -> None:
    """Log a connection status transition"""
    message = f"Connection {old.value} -> {new.value}"
    if reason:
        message += f" ({reason})"
    logger.info(
        message,
        extra={"old_status": old.value, "new_status": new.value, "reason": reason, "device": device},
    )
