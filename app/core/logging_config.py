"""
Structured logging configuration for the application.

JSON-formatted logs in production, human-readable logs in development.
Every JSON record names the service so its lines can be picked out of a
shared log stream. OTP codes and tokens must never be passed to a logger.
"""

import logging
import sys
from typing import Any, Dict
from datetime import datetime, timezone
from pythonjsonlogger import jsonlogger

# Libraries that log every query or request at INFO/DEBUG
QUIET_LOGGERS = ("sqlalchemy.engine", "redis", "botocore", "boto3", "uvicorn.access")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that stamps each record with the service name and level.
    """

    def __init__(self, *args: Any, service: str = "fan-access-api", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.service = service

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['service'] = self.service
        log_record['logger'] = record.name

        # Source location only for warnings and above
        if record.levelno >= logging.WARNING:
            log_record['function'] = record.funcName
            log_record['line'] = record.lineno


def setup_logging(log_level: str = "INFO", json_logs: bool = True, service: str = "fan-access-api") -> None:
    """
    Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Whether to use JSON formatting (True for production, False for development)
        service: Name stamped on every JSON record
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if json_logs:
        formatter = CustomJsonFormatter(
            '%(timestamp)s %(level)s %(service)s %(logger)s %(message)s',
            service=service
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s %(levelname)-8s [%(name)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler.setFormatter(formatter)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
