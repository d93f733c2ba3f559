"""OAuth2 access tokens for XOAUTH2 IMAP logins."""

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable
from typing import Any

import requests
from pydantic import BaseModel

from mailroom_mail.account_registry import MailAccount
from mailroom_mail.connectors.imap_connector import ImapConnectionError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_IMAP_SCOPE = "https://outlook.office.com/IMAP.AccessAsUser.All offline_access"

# Refresh tokens this long before they expire
EXPIRY_BUFFER_MS = 5 * 60 * 1000

TokenSaver = Callable[..., Awaitable[Any]]


class OAuthClientConfig(BaseModel):
    """Application OAuth client used when an account carries none of its own."""

    client_id: str = ""
    client_secret: str = ""

    @classmethod
    def from_env(cls, prefix: str) -> "OAuthClientConfig":
        """Load ``{prefix}_CLIENT_ID`` / ``{prefix}_CLIENT_SECRET``."""
        return cls(
            client_id=os.getenv(f"{prefix}_CLIENT_ID", ""),
            client_secret=os.getenv(f"{prefix}_CLIENT_SECRET", ""),
        )


class OAuthTokenSource:
    """Hands out a valid access token for an account, refreshing when stale."""

    def __init__(
        self,
        token_url: str,
        client: OAuthClientConfig | None = None,
        scope: str | None = None,
        on_refresh: TokenSaver | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.token_url = token_url
        self.client = client or OAuthClientConfig()
        self.scope = scope
        self._on_refresh = on_refresh
        self._clock = clock

    async def access_token(self, account: MailAccount) -> str:
        """
        Get a connection-ready access token.

        Raises:
            ImapConnectionError: If the account has no refresh token or the
                refresh request fails
        """
        now_ms = int(self._clock() * 1000)
        token = account.credential("access_token")
        expiry = int(account.credential("token_expiry") or 0)
        if token and expiry - EXPIRY_BUFFER_MS > now_ms:
            return token

        refresh_token = account.credential("refresh_token")
        if not refresh_token:
            raise ImapConnectionError(f"{account.provider} account missing refresh token")

        logger.debug("Refreshing access token for account %s", account.id)
        data = await asyncio.to_thread(
            self._refresh,
            refresh_token,
            account.credential("oauth_client_id") or self.client.client_id,
            account.credential("oauth_client_secret") or self.client.client_secret,
        )

        token = data["access_token"]
        expiry = now_ms + int(data.get("expires_in", 3600)) * 1000

        # Later folders of the same pass reuse this account object
        account.config_json.update(access_token=token, token_expiry=expiry)
        if data.get("refresh_token"):
            account.config_json["refresh_token"] = data["refresh_token"]

        if self._on_refresh is not None:
            await self._on_refresh(
                account.id,
                access_token=token,
                token_expiry=expiry,
                refresh_token=data.get("refresh_token"),
            )
        return token

    def _refresh(self, refresh_token: str, client_id: str, client_secret: str) -> dict[str, Any]:
        form = {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self.scope:
            form["scope"] = self.scope

        try:
            response = requests.post(self.token_url, data=form, timeout=30)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ImapConnectionError(f"OAuth token refresh failed: {e}") from e

        if "access_token" not in data:
            raise ImapConnectionError("OAuth token refresh returned no access token")
        return data
