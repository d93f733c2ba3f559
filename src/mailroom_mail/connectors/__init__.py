"""Mail server connectors."""

from mailroom_mail.connectors.connection import ImapMailboxConnection, MailboxConnection
from mailroom_mail.connectors.imap_connector import (
    ImapConfig,
    ImapConnectionError,
    ImapConnector,
    ImapError,
)
from mailroom_mail.connectors.providers import ConnectionProvider, UnsupportedProviderError

__all__ = [
    "ConnectionProvider",
    "ImapConfig",
    "ImapConnectionError",
    "ImapConnector",
    "ImapError",
    "ImapMailboxConnection",
    "MailboxConnection",
    "UnsupportedProviderError",
]
