"""Tests for connection providers and OAuth token refresh."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import requests

from mailroom_common.config import SyncConfig
from mailroom_mail.connectors.connection import ImapMailboxConnection
from mailroom_mail.connectors.imap_connector import ImapConfig, ImapConnectionError
from mailroom_mail.connectors.oauth import (
    EXPIRY_BUFFER_MS,
    GOOGLE_TOKEN_URL,
    MICROSOFT_IMAP_SCOPE,
    MICROSOFT_TOKEN_URL,
    OAuthClientConfig,
    OAuthTokenSource,
)
from mailroom_mail.connectors.providers import (
    ConnectionProvider,
    OAuthImapBuilder,
    PasswordImapBuilder,
    UnsupportedProviderError,
)
from tests.fakes import make_account

NOW_SECONDS = 1_700_000_000.0
NOW_MS = int(NOW_SECONDS * 1000)


def token_response(payload: dict[str, object]) -> MagicMock:
    response = MagicMock()
    response.json.return_value = payload
    return response


class TestOAuthTokenSource:
    """Tests for OAuthTokenSource.access_token."""

    async def test_valid_token_is_reused(self) -> None:
        account = make_account(
            provider="gmail",
            access_token="still-good",
            token_expiry=NOW_MS + EXPIRY_BUFFER_MS + 60_000,
        )
        tokens = OAuthTokenSource(GOOGLE_TOKEN_URL, clock=lambda: NOW_SECONDS)

        with patch("mailroom_mail.connectors.oauth.requests.post") as post:
            assert await tokens.access_token(account) == "still-good"

        post.assert_not_called()

    async def test_token_inside_buffer_is_refreshed_and_saved(self) -> None:
        account = make_account(
            provider="outlook",
            access_token="stale",
            token_expiry=NOW_MS + 60_000,
            refresh_token="refresh-1",
        )
        saver = AsyncMock()
        tokens = OAuthTokenSource(
            MICROSOFT_TOKEN_URL,
            client=OAuthClientConfig(client_id="app", client_secret="shh"),
            scope=MICROSOFT_IMAP_SCOPE,
            on_refresh=saver,
            clock=lambda: NOW_SECONDS,
        )

        with patch(
            "mailroom_mail.connectors.oauth.requests.post",
            return_value=token_response({"access_token": "fresh", "expires_in": 1800}),
        ) as post:
            token = await tokens.access_token(account)

        assert token == "fresh"
        form = post.call_args.kwargs["data"]
        assert form["refresh_token"] == "refresh-1"
        assert form["client_id"] == "app"
        assert form["grant_type"] == "refresh_token"
        assert form["scope"] == MICROSOFT_IMAP_SCOPE
        assert post.call_args.kwargs["timeout"] == 30
        saver.assert_awaited_once_with(
            account.id,
            access_token="fresh",
            token_expiry=NOW_MS + 1800 * 1000,
            refresh_token=None,
        )

    async def test_refreshed_token_is_reused_for_later_folders(self) -> None:
        account = make_account(
            provider="gmail",
            access_token="stale",
            token_expiry=NOW_MS,
            refresh_token="refresh-1",
        )
        tokens = OAuthTokenSource(GOOGLE_TOKEN_URL, clock=lambda: NOW_SECONDS)

        with patch(
            "mailroom_mail.connectors.oauth.requests.post",
            return_value=token_response(
                {"access_token": "fresh", "expires_in": 3600, "refresh_token": "refresh-2"}
            ),
        ) as post:
            first = await tokens.access_token(account)
            second = await tokens.access_token(account)

        assert first == second == "fresh"
        post.assert_called_once()
        assert account.credential("token_expiry") == NOW_MS + 3600 * 1000
        assert account.credential("refresh_token") == "refresh-2"

    async def test_account_client_overrides_app_client(self) -> None:
        account = make_account(
            provider="gmail",
            refresh_token="r",
            oauth_client_id="own-id",
            oauth_client_secret="own-secret",
        )
        tokens = OAuthTokenSource(
            GOOGLE_TOKEN_URL,
            client=OAuthClientConfig(client_id="app", client_secret="shh"),
            clock=lambda: NOW_SECONDS,
        )

        with patch(
            "mailroom_mail.connectors.oauth.requests.post",
            return_value=token_response({"access_token": "t"}),
        ) as post:
            await tokens.access_token(account)

        assert post.call_args.kwargs["data"]["client_id"] == "own-id"
        assert "scope" not in post.call_args.kwargs["data"]

    async def test_missing_refresh_token_raises(self) -> None:
        tokens = OAuthTokenSource(GOOGLE_TOKEN_URL, clock=lambda: NOW_SECONDS)

        with pytest.raises(ImapConnectionError, match="missing refresh token"):
            await tokens.access_token(make_account(provider="gmail"))

    async def test_http_failure_is_wrapped(self) -> None:
        response = token_response({})
        response.raise_for_status.side_effect = requests.HTTPError("400 invalid_grant")
        tokens = OAuthTokenSource(GOOGLE_TOKEN_URL, clock=lambda: NOW_SECONDS)

        with patch("mailroom_mail.connectors.oauth.requests.post", return_value=response):
            with pytest.raises(ImapConnectionError, match="invalid_grant"):
                await tokens.access_token(make_account(provider="gmail", refresh_token="r"))


class TestBuilders:
    """Tests for per-provider connection settings."""

    async def test_password_builder_uses_account_server(self) -> None:
        account = make_account(
            imap_host="mail.example.com",
            imap_port="143",
            imap_password="pw",
            imap_secure=False,
        )

        config = await PasswordImapBuilder().build_config(
            account, SyncConfig(connect_timeout_seconds=5, socket_timeout_seconds=7)
        )

        assert config.host == "mail.example.com"
        assert config.port == 143
        assert config.username == "user@example.com"
        assert config.password == "pw"
        assert config.use_ssl is False
        assert config.connect_timeout == 5
        assert config.socket_timeout == 7

    async def test_password_builder_prefers_explicit_user(self) -> None:
        account = make_account(
            imap_host="h", imap_port=993, imap_password="pw", imap_user="login-name"
        )

        config = await PasswordImapBuilder().build_config(account, SyncConfig())

        assert config.username == "login-name"
        assert config.use_ssl is True

    async def test_password_builder_rejects_incomplete_account(self) -> None:
        with pytest.raises(ImapConnectionError, match="missing required fields"):
            await PasswordImapBuilder().build_config(
                make_account(imap_host="h"), SyncConfig()
            )

    async def test_oauth_builder_for_gmail_fetches_labels(self) -> None:
        tokens = MagicMock()
        tokens.access_token = AsyncMock(return_value="tok")

        config = await OAuthImapBuilder("imap.gmail.com", tokens).build_config(
            make_account(provider="gmail", email="me@gmail.com"), SyncConfig()
        )

        assert config.access_token == "tok"
        assert config.username == "me@gmail.com"
        assert config.port == 993
        assert config.fetch_labels is True

    async def test_oauth_builder_for_outlook_skips_labels(self) -> None:
        tokens = MagicMock()
        tokens.access_token = AsyncMock(return_value="tok")

        config = await OAuthImapBuilder("outlook.office365.com", tokens).build_config(
            make_account(provider="outlook"), SyncConfig()
        )

        assert config.fetch_labels is False


class TestConnectionProvider:
    """Tests for ConnectionProvider.connect."""

    async def test_unknown_provider_raises(self) -> None:
        provider = ConnectionProvider(builders={})

        with pytest.raises(UnsupportedProviderError):
            await provider.connect(make_account(provider="yahoo"))

    async def test_connects_with_built_config(self) -> None:
        built = ImapConfig(host="h", username="u", password="p")
        builder = MagicMock()
        builder.build_config = AsyncMock(return_value=built)
        factory = MagicMock()
        sync_config = SyncConfig()
        provider = ConnectionProvider(
            builders={"custom": builder}, sync_config=sync_config, connector_factory=factory
        )
        account = make_account()

        connection = await provider.connect(account)

        builder.build_config.assert_awaited_once_with(account, sync_config)
        factory.assert_called_once_with(built)
        factory.return_value.connect.assert_called_once()
        assert isinstance(connection, ImapMailboxConnection)

    async def test_connect_failure_propagates(self) -> None:
        builder = MagicMock()
        builder.build_config = AsyncMock(return_value=ImapConfig(host="h", username="u"))
        factory = MagicMock()
        factory.return_value.connect.side_effect = ImapConnectionError("refused")
        provider = ConnectionProvider(builders={"custom": builder}, connector_factory=factory)

        with pytest.raises(ImapConnectionError, match="refused"):
            await provider.connect(make_account())

    def test_default_wires_all_providers(self) -> None:
        provider = ConnectionProvider.default(SyncConfig())

        assert set(provider._builders) == {"gmail", "outlook", "custom"}
