"""Blocking IMAP connector built on imaplib."""

import contextlib
import imaplib
import logging
import re
import ssl
from typing import Any

from pydantic import BaseModel

from mailroom_mail.models import MailboxStatus, RawMessage

logger = logging.getLogger(__name__)

_STATUS_ITEM_RE = re.compile(rb"(MESSAGES|UNSEEN|UIDVALIDITY|UIDNEXT)\s+(\d+)")
_UID_RE = re.compile(r"\bUID\s+(\d+)")
_SIZE_RE = re.compile(r"RFC822\.SIZE\s+(\d+)")
_FLAGS_RE = re.compile(r"FLAGS\s+\(([^)]*)\)")
_LABELS_RE = re.compile(r'X-GM-LABELS\s+\(((?:[^()"]|"[^"]*")*)\)')
_LIST_NAME_RE = re.compile(rb'"((?:[^"\\]|\\.)*)"$|\s([^\s"]+)$')


class ImapError(RuntimeError):
    """Server refused a command or answered something unparseable."""


class ImapConnectionError(ImapError):
    """Connecting or authenticating to the server failed."""


class ImapConfig(BaseModel):
    """IMAP connection settings."""

    host: str
    port: int = 993
    username: str
    password: str | None = None
    access_token: str | None = None  # XOAUTH2 bearer token
    use_ssl: bool = True
    connect_timeout: float = 30.0
    socket_timeout: float = 30.0
    fetch_labels: bool = False  # Gmail X-GM-LABELS


def quote_mailbox(folder: str) -> str:
    """Quote a mailbox name for use as an IMAP astring."""
    escaped = folder.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def xoauth2_string(username: str, access_token: str) -> bytes:
    """SASL XOAUTH2 initial client response."""
    return f"user={username}\x01auth=Bearer {access_token}\x01\x01".encode()


class ImapConnector:
    """Connector for a single IMAP account."""

    def __init__(self, config: ImapConfig) -> None:
        """Initialize IMAP connector."""
        self.config = config
        self._connection: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._current_folder: str | None = None

    def connect(self) -> None:
        """Establish and authenticate the connection."""
        if self._connection:
            return

        logger.debug("Connecting to IMAP server %s:%d", self.config.host, self.config.port)

        try:
            if self.config.use_ssl:
                context = ssl.create_default_context()
                conn: imaplib.IMAP4 = imaplib.IMAP4_SSL(
                    self.config.host,
                    self.config.port,
                    ssl_context=context,
                    timeout=self.config.connect_timeout,
                )
            else:
                conn = imaplib.IMAP4(
                    self.config.host,
                    self.config.port,
                    timeout=self.config.connect_timeout,
                )
        except (OSError, imaplib.IMAP4.error) as e:
            raise ImapConnectionError(f"IMAP connection failed: {e}") from e

        # Greeting has been read; from here on the socket inactivity timeout applies
        conn.sock.settimeout(self.config.socket_timeout)

        try:
            if self.config.access_token:
                token = xoauth2_string(self.config.username, self.config.access_token)
                conn.authenticate("XOAUTH2", lambda _: token)
            else:
                conn.login(self.config.username, self.config.password or "")
        except (OSError, imaplib.IMAP4.error) as e:
            with contextlib.suppress(Exception):
                conn.shutdown()
            raise ImapConnectionError(f"IMAP authentication failed: {e}") from e

        self._connection = conn
        logger.info("Connected to IMAP server %s", self.config.host)

    def disconnect(self) -> None:
        """Log out and drop the connection. Safe to call more than once."""
        if self._connection:
            with contextlib.suppress(Exception):
                self._connection.logout()
            self._connection = None
            self._current_folder = None

    def __enter__(self) -> "ImapConnector":
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.disconnect()

    def _ensure_connected(self) -> imaplib.IMAP4_SSL | imaplib.IMAP4:
        """Ensure we have an active connection."""
        if not self._connection:
            self.connect()
        assert self._connection is not None
        return self._connection

    def mailbox_status(self, folder: str) -> MailboxStatus:
        """
        Query message counters without selecting the folder.

        Args:
            folder: Folder name (e.g., 'INBOX')

        Returns:
            MailboxStatus with exists, unseen, UIDVALIDITY and UIDNEXT
        """
        conn = self._ensure_connected()

        status, data = conn.status(quote_mailbox(folder), "(MESSAGES UNSEEN UIDVALIDITY UIDNEXT)")
        if status != "OK" or not data or data[0] is None:
            raise ImapError(f"Failed to get status for {folder}: {data}")

        # Response like: b'INBOX (MESSAGES 3 UNSEEN 1 UIDVALIDITY 12345 UIDNEXT 4)'
        raw = data[0] if isinstance(data[0], bytes) else str(data[0]).encode()
        items = {key.decode(): int(value) for key, value in _STATUS_ITEM_RE.findall(raw)}
        if "UIDVALIDITY" not in items or "UIDNEXT" not in items:
            raise ImapError(f"Could not parse STATUS response for {folder}: {data}")

        return MailboxStatus(
            exists=items.get("MESSAGES", 0),
            unseen=items.get("UNSEEN", 0),
            uid_validity=items["UIDVALIDITY"],
            uid_next=items["UIDNEXT"],
        )

    def select_folder(self, folder: str, readonly: bool = True) -> None:
        """Make a folder the active mailbox."""
        conn = self._ensure_connected()

        if self._current_folder == folder:
            return

        status, data = conn.select(quote_mailbox(folder), readonly=readonly)
        if status != "OK":
            raise ImapError(f"Failed to select folder {folder}: {data}")

        self._current_folder = folder
        logger.debug("Selected folder %s", folder)

    def fetch_since(self, start_uid: int) -> list[RawMessage]:
        """
        Fetch every message of the selected folder with UID >= start_uid.

        Uses BODY.PEEK[] so fetching never marks messages as seen.

        Args:
            start_uid: Lowest UID to return (inclusive)

        Returns:
            Messages in ascending UID order
        """
        conn = self._ensure_connected()
        if self._current_folder is None:
            raise ImapError("No folder selected")

        items = "(UID FLAGS RFC822.SIZE BODY.PEEK[]"
        items += " X-GM-LABELS)" if self.config.fetch_labels else ")"

        status, data = conn.uid("fetch", f"{max(1, start_uid)}:*", items)
        if status != "OK":
            raise ImapError(f"Failed to fetch from {self._current_folder}: {data}")

        messages = [m for m in parse_fetch_response(data) if m.uid >= start_uid]
        messages.sort(key=lambda m: m.uid)
        logger.debug(
            "Fetched %d messages from %s starting at UID %d",
            len(messages),
            self._current_folder,
            start_uid,
        )
        return messages

    def list_folders(self) -> list[str]:
        """List all available folders."""
        conn = self._ensure_connected()
        status, data = conn.list()
        if status != "OK":
            raise ImapError(f"Failed to list folders: {data}")

        folders: list[str] = []
        for item in data:
            if not isinstance(item, bytes):
                continue
            # Response like: b'(\\HasNoChildren) "/" "INBOX"'
            match = _LIST_NAME_RE.search(item)
            if match:
                name = match.group(1) if match.group(1) is not None else match.group(2)
                folders.append(name.decode("utf-8").replace('\\"', '"'))

        return folders


def _parse_labels(text: str) -> list[str]:
    match = _LABELS_RE.search(text)
    if not match:
        return []
    return [label.strip('"') for label in re.findall(r'"[^"]*"|\S+', match.group(1))]


def parse_fetch_response(data: list[Any]) -> list[RawMessage]:
    """
    Turn an imaplib UID FETCH response into RawMessages.

    Each message arrives as a (prefix, literal) tuple, optionally followed by
    a bytes element carrying attributes the server sent after the literal.
    """
    messages: list[RawMessage] = []
    index = 0
    while index < len(data):
        item = data[index]
        index += 1
        if not isinstance(item, tuple):
            continue

        text = item[0].decode("utf-8", errors="replace")
        source = item[1]
        if index < len(data) and isinstance(data[index], bytes):
            text += " " + data[index].decode("utf-8", errors="replace")
            index += 1

        uid_match = _UID_RE.search(text)
        if not uid_match:
            raise ImapError(f"FETCH response without UID: {text[:200]}")

        flags_match = _FLAGS_RE.search(text)
        size_match = _SIZE_RE.search(text)
        messages.append(
            RawMessage(
                uid=int(uid_match.group(1)),
                flags=flags_match.group(1).split() if flags_match else [],
                source=source,
                size=int(size_match.group(1)) if size_match else len(source or b""),
                labels=_parse_labels(text) if "X-GM-LABELS" in text else None,
            )
        )
    return messages


