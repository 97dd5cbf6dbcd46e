"""
Structured Logging Setup

Consistent logging configuration across all services.
Uses JSON format for structured logs in production.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any
import json


# Standard LogRecord attributes; anything else on a record came from `extra`
_RECORD_ATTRS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "asctime", "taskName",
})


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with `extra` fields inlined"""

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

        log_data.update(
            (key, value) for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        )
        return json.dumps(log_data, default=str)


class StderrHandler(logging.StreamHandler):
    """Writes to whatever sys.stderr is at emit time"""

    def __init__(self, level: int = logging.NOTSET):
        logging.Handler.__init__(self, level)

    @property
    def stream(self):
        return sys.stderr


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = {
            f"extra_{key}" if key in _RECORD_ATTRS else key: value
            for key, value in (kwargs.get("extra") or {}).items()
        }
        extra["service"] = self.extra.get("service", "unknown")
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "device", "discovery.slaves")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"fieldgate.{service_name}")
    logger.setLevel(numeric_level)

    # Clear existing handlers
    logger.handlers.clear()

    # stdout is reserved for CLI output
    handler = StderrHandler()
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

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Args:
        service_name: Name of the service

    Returns:
        Logger adapter with service name in all logs
    """
    log_level = os.environ.get("FIELDGATE_LOG_LEVEL", "INFO")
    json_format = os.environ.get("FIELDGATE_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def configure_all(log_level: str, json_format: bool) -> None:
    """Re-apply level and format to every fieldgate logger already created"""
    os.environ["FIELDGATE_LOG_LEVEL"] = log_level
    os.environ["FIELDGATE_LOG_FORMAT"] = "json" if json_format else "text"

    for name in list(logging.root.manager.loggerDict):
        if name.startswith("fieldgate."):
            setup_logging(name[len("fieldgate."):], log_level, json_format)


def log_coil_read(
    logger: logging.Logger,
    equipment_name: str,
    states: dict[int, bool],
    confirmed: bool = True,
    success: bool = True,
) -> None:
    """Log a coil read (or a cached-state read for write-only devices)"""
    if success:
        source = "device" if confirmed else "command cache"
        logger.debug(
            f"Read {len(states)} coils from {equipment_name} ({source})",
            extra={"device": equipment_name, "coils": states, "confirmed": confirmed},
        )
    else:
        logger.warning(
            f"Failed to read coils from {equipment_name}, current state unverified",
            extra={"device": equipment_name},
        )


def log_coil_write(
    logger: logging.Logger,
    equipment_name: str,
    address: int,
    value: Any,
    confirmed: bool = True,
    success: bool = True,
) -> None:
    """Log a coil write operation"""
    if not success:
        logger.error(
            f"Command failed: {equipment_name}.coil[{address}] = {value}",
            extra={"device": equipment_name, "coil": address, "value": value},
        )
    elif confirmed:
        logger.info(
            f"Write {equipment_name}.coil[{address}] = {value}",
            extra={"device": equipment_name, "coil": address, "value": value},
        )
    else:
        logger.info(
            f"Command sent, state unconfirmed: {equipment_name}.coil[{address}] = {value}",
            extra={
                "device": equipment_name,
                "coil": address,
                "value": value,
                "confirmed": False,
            },
        )


def log_scan_progress(
    logger: logging.Logger,
    target: str,
    scanned: int,
    total: int,
    discovered: int,
) -> None:
    """Log scan progress"""
    pct = round(scanned / total * 100) if total else 100
    logger.debug(
        f"Scan {target}: {scanned}/{total} ({pct}%), {discovered} found",
        extra={
            "target": target,
            "scanned": scanned,
            "total": total,
            "discovered": discovered,
        },
    )
