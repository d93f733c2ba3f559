"""Connection providers: one way to build a live connection per provider tag."""

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from mailroom_common.config import SyncConfig
from mailroom_mail.account_registry import MailAccount
from mailroom_mail.connectors.connection import ImapMailboxConnection, MailboxConnection
from mailroom_mail.connectors.imap_connector import ImapConfig, ImapConnectionError, ImapConnector
from mailroom_mail.connectors.oauth import (
    GOOGLE_TOKEN_URL,
    MICROSOFT_IMAP_SCOPE,
    MICROSOFT_TOKEN_URL,
    OAuthClientConfig,
    OAuthTokenSource,
    TokenSaver,
)

logger = logging.getLogger(__name__)


class UnsupportedProviderError(ValueError):
    """Account provider tag has no registered connection builder."""


class ConnectionBuilder(Protocol):
    """Turns an account into IMAP connection settings."""

    async def build_config(self, account: MailAccount, sync: SyncConfig) -> ImapConfig: ...


class OAuthImapBuilder:
    """XOAUTH2 login against a fixed provider host."""

    def __init__(self, host: str, tokens: OAuthTokenSource, port: int = 993) -> None:
        self.host = host
        self.port = port
        self.tokens = tokens

    async def build_config(self, account: MailAccount, sync: SyncConfig) -> ImapConfig:
        access_token = await self.tokens.access_token(account)
        return ImapConfig(
            host=self.host,
            port=self.port,
            username=account.email,
            access_token=access_token,
            connect_timeout=sync.connect_timeout_seconds,
            socket_timeout=sync.socket_timeout_seconds,
            fetch_labels=self.host == "imap.gmail.com",
        )


class PasswordImapBuilder:
    """Username/password login against the account's own server."""

    async def build_config(self, account: MailAccount, sync: SyncConfig) -> ImapConfig:
        host = account.credential("imap_host")
        port = account.credential("imap_port")
        password = account.credential("imap_password")
        if not host or not port or not password:
            raise ImapConnectionError("Custom IMAP account missing required fields")

        return ImapConfig(
            host=host,
            port=int(port),
            username=account.credential("imap_user") or account.email,
            password=password,
            use_ssl=bool(account.credential("imap_secure", True)),
            connect_timeout=sync.connect_timeout_seconds,
            socket_timeout=sync.socket_timeout_seconds,
        )


class ConnectionProvider:
    """Selects a builder by ``account.provider`` and opens the connection."""

    def __init__(
        self,
        builders: dict[str, ConnectionBuilder],
        sync_config: SyncConfig | None = None,
        connector_factory: Callable[[ImapConfig], ImapConnector] = ImapConnector,
    ) -> None:
        self._builders = builders
        self.sync_config = sync_config or SyncConfig()
        self._connector_factory = connector_factory

    @classmethod
    def default(
        cls,
        sync_config: SyncConfig | None = None,
        on_token_refresh: TokenSaver | None = None,
    ) -> "ConnectionProvider":
        """Gmail and Outlook over XOAUTH2, everything else by password."""
        gmail_tokens = OAuthTokenSource(
            GOOGLE_TOKEN_URL,
            client=OAuthClientConfig.from_env("GMAIL"),
            on_refresh=on_token_refresh,
        )
        outlook_tokens = OAuthTokenSource(
            MICROSOFT_TOKEN_URL,
            client=OAuthClientConfig.from_env("OUTLOOK"),
            scope=MICROSOFT_IMAP_SCOPE,
            on_refresh=on_token_refresh,
        )
        return cls(
            builders={
                "gmail": OAuthImapBuilder("imap.gmail.com", gmail_tokens),
                "outlook": OAuthImapBuilder("outlook.office365.com", outlook_tokens),
                "custom": PasswordImapBuilder(),
            },
            sync_config=sync_config,
        )

    async def connect(self, account: MailAccount) -> MailboxConnection:
        """
        Open a live, authenticated connection for an account.

        Raises:
            UnsupportedProviderError: If the provider tag is unknown
            ImapConnectionError: On missing credentials, auth or network failure
        """
        builder = self._builders.get(account.provider)
        if builder is None:
            raise UnsupportedProviderError(f"Unsupported provider: {account.provider}")

        config = await builder.build_config(account, self.sync_config)
        connector = self._connector_factory(config)
        await asyncio.to_thread(connector.connect)
        logger.debug("Opened %s connection for account %s", account.provider, account.id)
        return ImapMailboxConnection(connector)
