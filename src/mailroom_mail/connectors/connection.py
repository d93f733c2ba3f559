"""Async view of a live IMAP connection."""

import asyncio
from collections.abc import AsyncIterator
from typing import Protocol

from mailroom_mail.connectors.imap_connector import ImapConnector
from mailroom_mail.models import MailboxStatus, RawMessage


class MailboxConnection(Protocol):
    """A live, authenticated mailbox connection."""

    async def get_mailbox_status(self, folder: str) -> MailboxStatus: ...

    async def open_mailbox(self, folder: str) -> None: ...

    def fetch_range(self, start_uid: int) -> AsyncIterator[RawMessage]: ...

    async def close(self) -> None: ...


class ImapMailboxConnection:
    """Runs a blocking ImapConnector in worker threads, one call at a time."""

    def __init__(self, connector: ImapConnector) -> None:
        self._connector = connector

    async def get_mailbox_status(self, folder: str) -> MailboxStatus:
        return await asyncio.to_thread(self._connector.mailbox_status, folder)

    async def open_mailbox(self, folder: str) -> None:
        await asyncio.to_thread(self._connector.select_folder, folder)

    async def fetch_range(self, start_uid: int) -> AsyncIterator[RawMessage]:
        """Yield messages with UID >= start_uid from the open mailbox."""
        messages = await asyncio.to_thread(self._connector.fetch_since, start_uid)
        for message in messages:
            yield message

    async def close(self) -> None:
        await asyncio.to_thread(self._connector.disconnect)
