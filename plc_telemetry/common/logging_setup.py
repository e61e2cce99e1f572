"""
Structured Logging Setup

Consistent logging configuration across drivers, services and storage.
Uses JSON format for structured logs in production.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

# LogRecord attributes that are not user-supplied extras
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
    Set up structured logging for one area of the engine.

    Args:
        service_name: Name of the area (e.g., "drivers.mc", "services.polling")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"plc_telemetry.{service_name}")
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

    Level and format are taken from PLC_TELEMETRY_LOG_LEVEL and
    PLC_TELEMETRY_LOG_FORMAT.
    """
    log_level = os.environ.get("PLC_TELEMETRY_LOG_LEVEL", "INFO")
    json_format = os.environ.get("PLC_TELEMETRY_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def log_device_read(
    logger: logging.Logger,
    device_key: str,
    point_id: str,
    value: Any,
    success: bool = True,
    error: str | None = None,
) -> None:
    """Log a single point read"""
    if success:
        logger.debug(
            f"Read {device_key}.{point_id} = {value}",
            extra={"device": device_key, "point": point_id, "value": value},
        )
    else:
        logger.warning(
            f"Failed to read {device_key}.{point_id}: {error}",
            extra={"device": device_key, "point": point_id, "error": error},
        )


def log_device_write(
    logger: logging.Logger,
    device_key: str,
    point_id: str,
    value: Any,
    success: bool = True,
) -> None:
    """Log a single point write"""
    if success:
        logger.info(
            f"Write {device_key}.{point_id} = {value}",
            extra={"device": device_key, "point": point_id, "value": value},
        )
    else:
        logger.error(
            f"Failed to write {device_key}.{point_id} = {value}",
            extra={"device": device_key, "point": point_id, "value": value},
        )


def log_poll_failure(
    logger: logging.Logger,
    device_key: str,
    error: str,
    consecutive_failures: int,
    duration_ms: float,
) -> None:
    """Log a failed poll tick"""
    logger.error(
        f"Poll failed for {device_key}: {error} "
        f"(consecutive={consecutive_failures}, took {duration_ms:.0f}ms)",
        extra={
            "device": device_key,
            "error": error,
            "consecutive_failures": consecutive_failures,
            "duration_ms": duration_ms,
        },
    )
