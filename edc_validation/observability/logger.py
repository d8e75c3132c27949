"""
Structured JSON logging for the clinical validation engine

Modules log through ``get_logger(__name__)``. Their loggers propagate to the
package logger ``edc_validation``, which owns the only handler, so an
embedding application can re-route or silence the engine in one place.
Entries are JSON (python-json-logger) unless ``EDC_LOG_FORMAT=text``.

Submitted clinical values must not reach the logs: extra fields listed in
``REDACTED_FIELDS`` are masked by the JSON formatter.
"""
import logging
import os
import sys
import time
from typing import TextIO

from pythonjsonlogger import jsonlogger

PACKAGE_LOGGER = "edc_validation"
SERVICE_NAME = "edc-validation"

REDACTED_FIELDS = frozenset({"value", "compare_value", "submitted", "password"})
REDACTED = "[redacted]"


def _env(name: str, default: str) -> str:
    """EDC_-prefixed variable first, then the bare name shared with other services."""
    return os.getenv(f"EDC_{name}") or os.getenv(name, default)


class EdcJsonFormatter(jsonlogger.JsonFormatter):
    """
    Adds timestamp, level, logger, function and service to every entry and
    masks redacted fields.
    """

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["function"] = record.funcName
        log_record["service"] = SERVICE_NAME

        for key in REDACTED_FIELDS.intersection(log_record):
            log_record[key] = REDACTED


def setup_logger(
    level: str | None = None,
    format_type: str | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    (Re)configure the package logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (defaults to
            EDC_LOG_LEVEL, then LOG_LEVEL, then INFO)
        format_type: "json" or "text" (defaults to EDC_LOG_FORMAT, then
            LOG_FORMAT, then json)
        stream: Output stream (stdout if None)

    Returns:
        The package logger
    """
    level_name = (level or _env("LOG_LEVEL", "INFO")).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO
    format_type = format_type or _env("LOG_FORMAT", "json")

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(log_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    if format_type == "json":
        handler.setFormatter(
            EdcJsonFormatter(
                fmt="%(timestamp)s %(level)s %(logger)s %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """
    Logger for a module of this package, configuring the package logger on
    first use.
    """
    if not logging.getLogger(PACKAGE_LOGGER).handlers:
        setup_logger()
    return logging.getLogger(name)


class log_operation:
    """
    Context manager that logs how long an operation took and whether it failed

    Usage:
        with log_operation("Validating form", logger=logger, form_id=12):
            ...
    """

    def __init__(self, operation_name: str, logger: logging.Logger | None = None, **extra_fields):
        self.operation_name = operation_name
        self.logger = logger or get_logger()
        self.extra_fields = extra_fields
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.debug(
            f"Starting: {self.operation_name}",
            extra={"operation": self.operation_name, **self.extra_fields}
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = round(time.monotonic() - (self.start_time or time.monotonic()), 3)
        fields = {"operation": self.operation_name, "duration_seconds": duration, **self.extra_fields}

        if exc_type is None:
            self.logger.info(f"Completed: {self.operation_name}", extra={**fields, "status": "success"})
        else:
            self.logger.error(
                f"Failed: {self.operation_name}",
                extra={
                    **fields,
                    "status": "error",
                    "error_type": exc_type.__name__,
                    "error_message": str(exc_val),
                },
                exc_info=True,
            )
        return False
