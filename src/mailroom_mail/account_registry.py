"""Mail account registry backed by Postgres."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

import psycopg

from mailroom_common.config import PostgresConfig

logger = logging.getLogger(__name__)

ConnectionStatus = Literal["connected", "failed", "reconnecting"]

_ACCOUNT_COLUMNS = """
    id, email, provider, auth_type, label, connection_status, last_error,
    config_json, last_synced_at, created_at, updated_at
"""


@dataclass
class MailAccount:
    """
    Mail account and how to connect to it.

    Provider credentials live in ``config_json``: ``access_token``,
    ``refresh_token``, ``token_expiry`` (epoch millis), ``oauth_client_id``,
    ``oauth_client_secret`` for OAuth2 accounts; ``imap_host``, ``imap_port``,
    ``imap_user``, ``imap_password``, ``imap_secure`` for password accounts.
    """

    id: str
    email: str
    provider: Literal["gmail", "outlook", "custom"]
    auth_type: Literal["oauth2", "password"]
    label: str
    connection_status: ConnectionStatus
    config_json: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    last_error: str | None = None
    last_synced_at: datetime | None = None

    def credential(self, key: str, default: Any = None) -> Any:
        """Read one credential field from the provider config."""
        return self.config_json.get(key, default)


class AccountRegistry:
    """Registry for mail accounts and their connection health."""

    def __init__(self, config: PostgresConfig | None = None) -> None:
        """Initialize account registry."""
        self.config = config or PostgresConfig.from_env()

    async def _connect(self) -> psycopg.AsyncConnection[tuple[Any, ...]]:
        """Open a database connection."""
        return await psycopg.AsyncConnection.connect(self.config.connection_string)

    def _row_to_account(self, row: tuple[Any, ...]) -> MailAccount:
        """Convert a database row to MailAccount."""
        return MailAccount(
            id=str(row[0]),
            email=row[1],
            provider=row[2],
            auth_type=row[3],
            label=row[4],
            connection_status=row[5],
            last_error=row[6],
            config_json=row[7] or {},
            last_synced_at=row[8],
            created_at=row[9],
            updated_at=row[10],
        )

    async def list_accounts(self) -> list[MailAccount]:
        """List every registered account, oldest first."""
        query = f"SELECT {_ACCOUNT_COLUMNS} FROM mail_accounts ORDER BY created_at"

        accounts: list[MailAccount] = []
        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(query)
            for row in await cur.fetchall():
                accounts.append(self._row_to_account(row))

        logger.debug("Listed %d accounts", len(accounts))
        return accounts

    async def get_account(self, account_id: str) -> MailAccount | None:
        """
        Get a single account.

        Returns:
            MailAccount if found, None otherwise
        """
        query = f"SELECT {_ACCOUNT_COLUMNS} FROM mail_accounts WHERE id = %s"

        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(query, (account_id,))
            row = await cur.fetchone()
            if row:
                return self._row_to_account(row)

        return None

    async def upsert_account(
        self,
        account_id: str,
        email: str,
        provider: Literal["gmail", "outlook", "custom"],
        auth_type: Literal["oauth2", "password"],
        config_json: dict[str, Any],
        label: str = "",
    ) -> MailAccount:
        """
        Insert or update an account.

        Args:
            account_id: Account identifier
            email: Mailbox address
            provider: Mail provider
            auth_type: OAuth2 or password authentication
            config_json: Provider credentials and server settings
            label: Display label (defaults to the email address)

        Returns:
            The upserted MailAccount
        """
        query = f"""
            INSERT INTO mail_accounts (
                id, email, provider, auth_type, label, connection_status, config_json
            ) VALUES (%s, %s, %s, %s, %s, 'connected', %s::jsonb)
            ON CONFLICT (id)
            DO UPDATE SET
                email = EXCLUDED.email,
                provider = EXCLUDED.provider,
                auth_type = EXCLUDED.auth_type,
                label = EXCLUDED.label,
                config_json = EXCLUDED.config_json,
                updated_at = NOW()
            RETURNING {_ACCOUNT_COLUMNS}
        """

        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(
                query,
                (
                    account_id,
                    email,
                    provider,
                    auth_type,
                    label or email,
                    json.dumps(config_json),
                ),
            )
            row = await cur.fetchone()
            await conn.commit()

            if row is None:
                raise RuntimeError("Upsert did not return a row")

            logger.info("Upserted account %s (provider=%s)", account_id, provider)
            return self._row_to_account(row)

    async def _update(self, query: str, params: tuple[Any, ...]) -> bool:
        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(query, params)
            affected = cur.rowcount
            await conn.commit()
        return affected > 0

    async def update_connection_status(
        self,
        account_id: str,
        status: ConnectionStatus,
        error: str | None = None,
    ) -> bool:
        """
        Record connection health. A non-failed status clears the last error.

        Returns:
            True if the account exists
        """
        updated = await self._update(
            """
            UPDATE mail_accounts
            SET connection_status = %s, last_error = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (status, error, account_id),
        )
        if updated and status == "failed":
            logger.warning("Account %s marked failed: %s", account_id, error)
        return updated

    async def update_tokens(
        self,
        account_id: str,
        access_token: str,
        token_expiry: int,
        refresh_token: str | None = None,
    ) -> bool:
        """Persist a refreshed OAuth access token (expiry in epoch millis)."""
        patch: dict[str, Any] = {"access_token": access_token, "token_expiry": token_expiry}
        if refresh_token:
            patch["refresh_token"] = refresh_token

        return await self._update(
            """
            UPDATE mail_accounts
            SET config_json = config_json || %s::jsonb, updated_at = NOW()
            WHERE id = %s
            """,
            (json.dumps(patch), account_id),
        )

    async def update_last_synced(self, account_id: str) -> bool:
        """Stamp the account's last successful sync time."""
        return await self._update(
            "UPDATE mail_accounts SET last_synced_at = NOW(), updated_at = NOW() WHERE id = %s",
            (account_id,),
        )

    async def delete_account(self, account_id: str) -> bool:
        """
        Delete an account.

        Returns:
            True if deleted, False if not found
        """
        deleted = await self._update("DELETE FROM mail_accounts WHERE id = %s", (account_id,))
        if deleted:
            logger.info("Deleted account %s", account_id)
        return deleted
