"""Mailroom incremental mailbox sync."""

from mailroom_mail.account_registry import AccountRegistry, MailAccount
from mailroom_mail.background import BackgroundSync, BackgroundSyncReport, SyncRateLimiter
from mailroom_mail.connectors import ConnectionProvider, ImapConnector
from mailroom_mail.message_store import ObjectMessageStore
from mailroom_mail.models import Message, SyncProgress, SyncResult, SyncState
from mailroom_mail.parser import MessageParseError, parse_raw_message
from mailroom_mail.progress import KafkaProgressPublisher, ProgressRecorder
from mailroom_mail.sync import MailSync
from mailroom_mail.sync_state import PostgresSyncStateStore

__all__ = [
    "MailSync",
    "BackgroundSync",
    "BackgroundSyncReport",
    "SyncRateLimiter",
    "ConnectionProvider",
    "ImapConnector",
    "AccountRegistry",
    "MailAccount",
    "ObjectMessageStore",
    "PostgresSyncStateStore",
    "Message",
    "SyncState",
    "SyncResult",
    "SyncProgress",
    "MessageParseError",
    "parse_raw_message",
    "KafkaProgressPublisher",
    "ProgressRecorder",
]
