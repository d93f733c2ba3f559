"""Incremental mailbox sync.

A folder sync connects, inspects the mailbox, invalidates the bookmark when
UIDVALIDITY changed, fetches only UIDs past the bookmark (or a bounded window
of the newest messages on first contact), parses, merges idempotently into
the message store and advances the bookmark. The connection is released on
every exit path.

Accounts are synced folder by folder; several accounts run in parallel,
bounded by ``SyncConfig.concurrency_limit``.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from mailroom_common.config import SyncConfig
from mailroom_mail.account_registry import ConnectionStatus, MailAccount
from mailroom_mail.connectors.connection import MailboxConnection
from mailroom_mail.folders import INBOX, sync_folders
from mailroom_mail.message_store import MessageStore
from mailroom_mail.models import SyncProgress, SyncResult, SyncStatus
from mailroom_mail.parser import parse_raw_messages
from mailroom_mail.progress import ProgressCallback
from mailroom_mail.sync_state import SyncStateStore

logger = logging.getLogger(__name__)


class MailboxConnector(Protocol):
    """Opens live connections. Raises on auth or network failure."""

    async def connect(self, account: MailAccount) -> MailboxConnection: ...


class AccountDirectory(Protocol):
    """Where connection health is recorded and accounts are removed."""

    async def update_connection_status(
        self, account_id: str, status: ConnectionStatus, error: str | None = None
    ) -> bool: ...

    async def delete_account(self, account_id: str) -> bool: ...


def select_start_uid(last_seen_uid: int, uid_next: int, window: int) -> int:
    """
    Lowest UID to fetch.

    Args:
        last_seen_uid: Bookmark, 0 when the folder was never synced
        uid_next: Next UID the server will assign
        window: How many of the newest messages a first sync takes

    Returns:
        ``last_seen_uid + 1`` when a bookmark exists, otherwise
        ``max(1, uid_next - window)``
    """
    if last_seen_uid > 0:
        return last_seen_uid + 1
    return max(1, uid_next - window)


def chunked(items: Sequence[MailAccount], size: int) -> list[Sequence[MailAccount]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class MailSync:
    """Folder sync engine and the account orchestrator built on it."""

    def __init__(
        self,
        connections: MailboxConnector,
        states: SyncStateStore,
        messages: MessageStore,
        accounts: AccountDirectory,
        config: SyncConfig | None = None,
    ) -> None:
        """
        Initialize mail sync.

        Args:
            connections: Opens a live connection per account
            states: Durable UIDVALIDITY / last-seen-UID bookmarks
            messages: Idempotent per-folder message storage
            accounts: Receives connected/failed status after each folder
            config: Fetch window, concurrency and parse-error policy
        """
        self.connections = connections
        self.states = states
        self.messages = messages
        self.accounts = accounts
        self.config = config or SyncConfig()

    def _emit(
        self,
        on_progress: ProgressCallback | None,
        account_id: str,
        folder: str,
        status: SyncStatus,
        message: str,
        new_emails: int | None = None,
        total_emails: int | None = None,
    ) -> None:
        if on_progress is None:
            return
        event = SyncProgress(account_id, folder, status, message, new_emails, total_emails)
        try:
            on_progress(event)
        except Exception:
            # A broken listener must not fail the sync
            logger.exception("Progress callback failed for %s/%s", account_id, folder)

    async def _record_status(
        self, account_id: str, status: ConnectionStatus, error: str | None = None
    ) -> None:
        try:
            await self.accounts.update_connection_status(account_id, status, error)
        except Exception:
            logger.exception("Could not record %s status for account %s", status, account_id)

    async def _release(self, connection: MailboxConnection, account_id: str) -> None:
        try:
            await connection.close()
        except Exception as e:
            logger.warning("Error closing connection for account %s: %s", account_id, e)

    async def sync_folder(
        self,
        account: MailAccount,
        folder: str = INBOX,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """
        Sync one folder of one account.

        Never raises: failures are reported through the returned SyncResult,
        an ``error`` progress event and a ``failed`` account status.

        Args:
            account: Account to sync
            folder: Server folder path
            on_progress: Receives connecting, syncing, completed or error events

        Returns:
            SyncResult with new and total message counts
        """
        connection: MailboxConnection | None = None
        self._emit(on_progress, account.id, folder, "connecting", f"Connecting to {account.email}")

        try:
            connection = await self.connections.connect(account)

            status = await connection.get_mailbox_status(folder)
            if status.exists == 0:
                logger.debug("Folder %s of account %s is empty", folder, account.id)
                self._emit(on_progress, account.id, folder, "completed", "Folder is empty", 0, 0)
                return SyncResult(account_id=account.id, folder=folder)

            if await self.states.has_generation_changed(account.id, folder, status.uid_validity):
                logger.info(
                    "UIDVALIDITY changed for %s/%s, resetting sync state",
                    account.id,
                    folder,
                )
                await self.states.reset(account.id, folder)

            state = await self.states.get(account.id, folder)
            last_seen_uid = state.last_seen_uid if state else 0
            start_uid = select_start_uid(
                last_seen_uid, status.uid_next, self.config.initial_fetch_window
            )

            if last_seen_uid:
                phase = "Syncing new messages"
            else:
                phase = "Initial sync: fetching recent messages"
            self._emit(on_progress, account.id, folder, "syncing", phase)

            await connection.open_mailbox(folder)
            raws = [raw async for raw in connection.fetch_range(start_uid)]

            parsed, failures = parse_raw_messages(
                raws, account.id, folder, self.config.snippet_length
            )
            if failures and self.config.on_parse_error == "abort":
                raise failures[0]
            for failure in failures:
                logger.warning(
                    "Skipping unparseable message UID %d in %s/%s: %s",
                    failure.uid,
                    account.id,
                    folder,
                    failure.reason,
                )

            added = await self.messages.append(account.id, folder, parsed) if parsed else 0

            # Skipped UIDs count as seen
            highest_uid = max((raw.uid for raw in raws), default=last_seen_uid)
            await self.states.put(account.id, folder, status.uid_validity, highest_uid)

            total = await self.messages.count(account.id, folder)
            logger.info(
                "Synced %s/%s: %d new, %d total, last UID %d",
                account.id,
                folder,
                added,
                total,
                highest_uid,
            )
            # Messages and bookmark are committed, so a status write failure is only logged
            await self._record_status(account.id, "connected")
            self._emit(on_progress, account.id, folder, "completed", "Sync complete", added, total)

            return SyncResult(
                account_id=account.id,
                folder=folder,
                new_emails=added,
                total_emails=total,
                skipped_uids=[f.uid for f in failures],
            )

        except Exception as e:
            error = str(e) or type(e).__name__
            logger.exception("Sync failed for %s/%s", account.id, folder)
            self._emit(on_progress, account.id, folder, "error", f"Sync failed: {error}")
            await self._record_status(account.id, "failed", error)
            return SyncResult(account_id=account.id, folder=folder, error=error)

        finally:
            if connection is not None:
                await self._release(connection, account.id)

    async def sync_account(
        self,
        account: MailAccount,
        folders: Sequence[str] = (INBOX,),
        on_progress: ProgressCallback | None = None,
    ) -> list[SyncResult]:
        """Sync folders of one account in order. A failed folder does not stop the rest."""
        results: list[SyncResult] = []
        for folder in folders:
            results.append(await self.sync_folder(account, folder, on_progress))
        return results

    async def sync_each_account(
        self,
        accounts: Sequence[MailAccount],
        folders_for: Callable[[MailAccount], Sequence[str]],
        on_progress: ProgressCallback | None = None,
    ) -> list[tuple[MailAccount, list[SyncResult]]]:
        """
        Sync accounts in chunks of ``concurrency_limit``, one chunk at a time.

        Args:
            accounts: Accounts to sync
            folders_for: Folder list for a given account
            on_progress: Progress callback shared by every folder sync

        Returns:
            (account, folder results) pairs in input order
        """
        outcomes: list[tuple[MailAccount, list[SyncResult]]] = []
        for chunk in chunked(accounts, self.config.concurrency_limit):
            chunk_results = await asyncio.gather(
                *(self.sync_account(a, folders_for(a), on_progress) for a in chunk)
            )
            outcomes.extend(zip(chunk, chunk_results, strict=True))
        return outcomes

    async def sync_all_accounts(
        self,
        accounts: Sequence[MailAccount],
        folders: Sequence[str] = (INBOX,),
        on_progress: ProgressCallback | None = None,
    ) -> list[SyncResult]:
        """Sync the same folders across accounts with bounded parallelism."""
        outcomes = await self.sync_each_account(accounts, lambda _: folders, on_progress)
        return [result for _, results in outcomes for result in results]

    async def quick_sync(
        self,
        accounts: Sequence[MailAccount],
        on_progress: ProgressCallback | None = None,
    ) -> list[SyncResult]:
        """INBOX only, for frequent polling."""
        return await self.sync_all_accounts(accounts, [INBOX], on_progress)

    async def full_sync(
        self,
        accounts: Sequence[MailAccount],
        on_progress: ProgressCallback | None = None,
    ) -> list[SyncResult]:
        """Each provider's standard folders, with the same bounded parallelism."""
        outcomes = await self.sync_each_account(
            accounts, lambda a: sync_folders(a.provider, full=True), on_progress
        )
        return [result for _, results in outcomes for result in results]

    async def remove_account(self, account_id: str) -> bool:
        """
        Forget an account: bookmarks, stored messages and the registry row.

        Returns:
            True if the account was registered
        """
        states = await self.states.delete_account_states(account_id)
        documents = await self.messages.delete_account(account_id)
        removed = await self.accounts.delete_account(account_id)
        logger.info(
            "Removed account %s (%d sync states, %d folder documents)",
            account_id,
            states,
            documents,
        )
        return removed
