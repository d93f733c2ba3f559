"""Sync state storage: the UIDVALIDITY / last-seen-UID bookmark per folder."""

import logging
from datetime import datetime
from typing import Any, Protocol

import psycopg

from mailroom_common.config import PostgresConfig
from mailroom_mail.models import SyncState

logger = logging.getLogger(__name__)

_STATE_COLUMNS = "account_id, folder, uid_validity, last_seen_uid, last_synced_at"


class SyncStateStore(Protocol):
    """Durable (account_id, folder) -> SyncState mapping."""

    async def get(self, account_id: str, folder: str) -> SyncState | None: ...

    async def put(
        self, account_id: str, folder: str, uid_validity: int, last_seen_uid: int
    ) -> SyncState: ...

    async def reset(self, account_id: str, folder: str) -> bool: ...

    async def has_generation_changed(
        self, account_id: str, folder: str, current_uid_validity: int
    ) -> bool: ...

    async def delete_account_states(self, account_id: str) -> int: ...


class PostgresSyncStateStore:
    """Sync states in the ``mail_sync_states`` table, one row per folder."""

    def __init__(self, config: PostgresConfig | None = None) -> None:
        """Initialize sync state store."""
        self.config = config or PostgresConfig.from_env()

    async def _connect(self) -> psycopg.AsyncConnection[tuple[Any, ...]]:
        """Open a database connection."""
        return await psycopg.AsyncConnection.connect(self.config.connection_string)

    @staticmethod
    def _row_to_state(row: tuple[Any, ...]) -> SyncState:
        return SyncState(
            account_id=row[0],
            folder=row[1],
            uid_validity=int(row[2]),
            last_seen_uid=int(row[3]),
            last_synced_at=row[4],
        )

    async def get(self, account_id: str, folder: str) -> SyncState | None:
        """
        Get sync state for an account/folder.

        Returns:
            SyncState if the folder was synced before, None otherwise
        """
        query = f"""
            SELECT {_STATE_COLUMNS}
            FROM mail_sync_states
            WHERE account_id = %s AND folder = %s
        """

        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(query, (account_id, folder))
            row = await cur.fetchone()
            if row:
                return self._row_to_state(row)

        return None

    async def put(
        self,
        account_id: str,
        folder: str,
        uid_validity: int,
        last_seen_uid: int,
    ) -> SyncState:
        """
        Insert or update the bookmark. Always refreshes ``last_synced_at``.

        Within one UIDVALIDITY the bookmark only moves forward, so a slower
        overlapping sync cannot rewind it.

        Args:
            account_id: Account identifier
            folder: IMAP folder
            uid_validity: UIDVALIDITY the UIDs belong to
            last_seen_uid: Highest fully synced UID

        Returns:
            The stored SyncState
        """
        query = f"""
            INSERT INTO mail_sync_states (
                account_id, folder, uid_validity, last_seen_uid, last_synced_at
            ) VALUES (%s, %s, %s, %s, NOW())
            ON CONFLICT (account_id, folder)
            DO UPDATE SET
                last_seen_uid = CASE
                    WHEN mail_sync_states.uid_validity = EXCLUDED.uid_validity
                    THEN GREATEST(mail_sync_states.last_seen_uid, EXCLUDED.last_seen_uid)
                    ELSE EXCLUDED.last_seen_uid
                END,
                uid_validity = EXCLUDED.uid_validity,
                last_synced_at = NOW()
            RETURNING {_STATE_COLUMNS}
        """

        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(query, (account_id, folder, uid_validity, last_seen_uid))
            row = await cur.fetchone()
            await conn.commit()

            if row is None:
                raise RuntimeError("Upsert did not return a row")

        state = self._row_to_state(row)
        logger.debug(
            "Stored sync state %s/%s uidvalidity=%d last_seen_uid=%d",
            account_id,
            folder,
            state.uid_validity,
            state.last_seen_uid,
        )
        return state

    async def reset(self, account_id: str, folder: str) -> bool:
        """
        Forget a folder's bookmark so the next sync starts from scratch.

        Returns:
            True if a state was deleted
        """
        query = "DELETE FROM mail_sync_states WHERE account_id = %s AND folder = %s"

        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(query, (account_id, folder))
            affected = cur.rowcount
            await conn.commit()

        return affected > 0

    async def has_generation_changed(
        self,
        account_id: str,
        folder: str,
        current_uid_validity: int,
    ) -> bool:
        """True only when a stored state exists with a different UIDVALIDITY."""
        state = await self.get(account_id, folder)
        if state is None:
            return False
        return state.uid_validity != current_uid_validity

    async def delete_account_states(self, account_id: str) -> int:
        """Delete every folder bookmark of an account."""
        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute("DELETE FROM mail_sync_states WHERE account_id = %s", (account_id,))
            affected = cur.rowcount
            await conn.commit()

        return affected

    async def list_account_states(self, account_id: str) -> list[SyncState]:
        """List every folder bookmark of an account."""
        query = f"""
            SELECT {_STATE_COLUMNS}
            FROM mail_sync_states
            WHERE account_id = %s
            ORDER BY folder
        """

        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(query, (account_id,))
            return [self._row_to_state(row) for row in await cur.fetchall()]

    async def get_last_sync_time(self, account_id: str) -> datetime | None:
        """Most recent sync time across the account's folders."""
        states = await self.list_account_states(account_id)
        if not states:
            return None
        return max(s.last_synced_at for s in states)
