"""Per-folder message storage with idempotent merge.

Each (account, folder) is one JSON document in object storage holding the
folder's messages sorted newest first.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Protocol

from mailroom_mail.models import FLAGGED_FLAG, SEEN_FLAG, Message
from mailroom_mail.parser import split_message_id
from mailroom_storage.object_store import ObjectStore, build_account_prefix, build_folder_key

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    """What the sync engine needs from message storage."""

    async def append(self, account_id: str, folder: str, messages: list[Message]) -> int: ...

    async def count(self, account_id: str, folder: str) -> int: ...

    async def delete_account(self, account_id: str) -> int: ...


def _set_flag(flags: list[str], flag: str, present: bool) -> list[str]:
    if present:
        return flags if flag in flags else [*flags, flag]
    return [f for f in flags if f != flag]


class ObjectMessageStore:
    """Message store on top of an S3-compatible ObjectStore."""

    def __init__(self, object_store: ObjectStore) -> None:
        self._objects = object_store
        self._locks: defaultdict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock(self, account_id: str, folder: str) -> asyncio.Lock:
        return self._locks[(account_id, folder)]

    async def _read(self, key: str) -> list[Message]:
        data = await asyncio.to_thread(self._objects.get_json, key)
        if not data:
            return []
        return [Message.from_json(item) for item in data]

    async def _write(self, key: str, messages: list[Message]) -> None:
        await asyncio.to_thread(self._objects.put_json, key, [m.to_json() for m in messages])

    async def load(self, account_id: str, folder: str) -> list[Message]:
        """All stored messages of a folder, newest first."""
        return await self._read(build_folder_key(account_id, folder))

    async def append(self, account_id: str, folder: str, messages: list[Message]) -> int:
        """
        Merge messages into a folder, skipping ids already stored.

        Existing entries are never overwritten, so locally changed flags
        survive a re-fetch of the same UID.

        Returns:
            Number of messages actually added
        """
        key = build_folder_key(account_id, folder)
        async with self._lock(account_id, folder):
            existing = await self._read(key)
            seen = {m.id for m in existing}

            to_add: list[Message] = []
            for message in messages:
                if message.id not in seen:
                    seen.add(message.id)
                    to_add.append(message)

            if not to_add:
                return 0

            combined = existing + to_add
            combined.sort(key=lambda m: m.sort_key, reverse=True)
            await self._write(key, combined)

        logger.debug("Appended %d messages to %s/%s", len(to_add), account_id, folder)
        return len(to_add)

    async def get_message(self, message_id: str) -> Message | None:
        """Look up a message by its ``account:folder:uid`` id."""
        parts = split_message_id(message_id)
        if parts is None:
            return None
        account_id, folder, _ = parts
        for message in await self.load(account_id, folder):
            if message.id == message_id:
                return message
        return None

    async def update_flags(
        self,
        message_id: str,
        is_read: bool | None = None,
        is_starred: bool | None = None,
    ) -> Message | None:
        """
        Apply a user read/starred change, keeping raw flags consistent.

        Returns:
            The updated message, or None if it is not stored
        """
        parts = split_message_id(message_id)
        if parts is None:
            return None
        account_id, folder, _ = parts
        key = build_folder_key(account_id, folder)

        async with self._lock(account_id, folder):
            messages = await self._read(key)
            target = next((m for m in messages if m.id == message_id), None)
            if target is None:
                return None

            if is_read is not None:
                target.is_read = is_read
                target.flags = _set_flag(target.flags, SEEN_FLAG, is_read)
            if is_starred is not None:
                target.is_starred = is_starred
                target.flags = _set_flag(target.flags, FLAGGED_FLAG, is_starred)

            await self._write(key, messages)

        return target

    async def delete_folder(self, account_id: str, folder: str) -> None:
        """Drop every stored message of a folder."""
        async with self._lock(account_id, folder):
            await asyncio.to_thread(self._objects.delete, build_folder_key(account_id, folder))
        self._locks.pop((account_id, folder), None)

    async def delete_account(self, account_id: str) -> int:
        """Drop every stored folder of an account. Returns documents deleted."""
        deleted = await asyncio.to_thread(
            self._objects.delete_prefix, build_account_prefix(account_id)
        )
        for key in [k for k in self._locks if k[0] == account_id]:
            del self._locks[key]
        logger.info("Deleted %d folder documents for account %s", deleted, account_id)
        return deleted

    async def count(self, account_id: str, folder: str) -> int:
        return len(await self.load(account_id, folder))

    async def unread_count(self, account_id: str, folder: str) -> int:
        return sum(1 for m in await self.load(account_id, folder) if not m.is_read)

    async def search(self, account_id: str, query: str) -> list[Message]:
        """Case-insensitive match on subject, sender, recipients and snippet."""
        needle = query.lower()
        keys = await asyncio.to_thread(self._objects.list_keys, build_account_prefix(account_id))

        matches: list[Message] = []
        for key in keys:
            if not key.endswith(".json"):
                continue
            for message in await self._read(key):
                haystack = [message.subject, message.snippet]
                haystack.extend(f"{a.name} {a.address}" for a in message.from_ + message.to)
                if any(needle in value.lower() for value in haystack):
                    matches.append(message)
        return matches
