"""JSON logging for mailroom services."""
import logging
import sys
from typing import Any, TextIO

from pythonjsonlogger import jsonlogger

from .config import get_config

REDACTED = "[redacted]"

# Account credential keys that must never reach log output via ``extra``
SECRET_FIELDS = frozenset(
    {
        "password",
        "imap_password",
        "access_token",
        "refresh_token",
        "oauth_client_secret",
    }
)

NOISY_LOGGERS = ("urllib3", "botocore", "boto3", "s3transfer", "imaplib", "psycopg")


class MailroomJsonFormatter(jsonlogger.JsonFormatter):
    """Stamps service identity on every record and masks credential fields."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        config = get_config()
        log_record.update(
            env=config.env,
            service=config.service.name,
            version=config.service.version,
            level=record.levelname,
            logger=record.name,
        )

        for key in SECRET_FIELDS.intersection(log_record):
            log_record[key] = REDACTED


def configure_logging(level: str = "INFO", stream: TextIO | None = None) -> None:
    """Route every logger through a single JSON handler."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        MailroomJsonFormatter(
            fmt="%(asctime)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp"},
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
