"""Mailroom common utilities shared by the mail sync components."""

from .config import MailroomConfig, PostgresConfig, SyncConfig, get_config
from .logging import configure_logging

__all__ = [
    "get_config",
    "MailroomConfig",
    "PostgresConfig",
    "SyncConfig",
    "configure_logging",
]
