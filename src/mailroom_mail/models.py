"""Records exchanged between the connector, parser, stores and sync engine."""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

SEEN_FLAG = "\\Seen"
FLAGGED_FLAG = "\\Flagged"

SyncStatus = Literal["connecting", "syncing", "completed", "error"]


@dataclass
class MailboxStatus:
    """Server-reported counters for one mailbox."""

    exists: int
    unseen: int
    uid_validity: int
    uid_next: int


@dataclass
class RawMessage:
    """One message as fetched from the server, before parsing."""

    uid: int
    flags: list[str]
    source: bytes | None
    size: int
    labels: list[str] | None = None


@dataclass
class EmailAddress:
    """Display name plus address."""

    name: str
    address: str


@dataclass
class Attachment:
    """Attachment with base64 content."""

    filename: str
    content_type: str
    size: int
    content: str


@dataclass
class Message:
    """Normalized mailbox entry, identified by ``account_id:folder:uid``."""

    id: str
    account_id: str
    uid: int
    folder: str
    message_id: str
    subject: str
    date: str
    flags: list[str]
    size: int
    is_read: bool
    is_starred: bool
    synced_at: str
    thread_id: str | None = None
    from_: list[EmailAddress] = field(default_factory=list)
    to: list[EmailAddress] = field(default_factory=list)
    cc: list[EmailAddress] = field(default_factory=list)
    bcc: list[EmailAddress] = field(default_factory=list)
    reply_to: list[EmailAddress] = field(default_factory=list)
    text: str | None = None
    html: str | None = None
    snippet: str = ""
    labels: list[str] | None = None
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def sort_key(self) -> datetime:
        """Timestamp used to order a folder newest first."""
        parsed = datetime.fromisoformat(self.date)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        data = asdict(self)
        data["from"] = data.pop("from_")
        return data

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "Message":
        """Create from JSON dict."""

        def addresses(key: str) -> list[EmailAddress]:
            return [EmailAddress(**a) for a in data.get(key) or []]

        return cls(
            id=data["id"],
            account_id=data["account_id"],
            uid=int(data["uid"]),
            folder=data["folder"],
            message_id=data.get("message_id") or data["id"],
            subject=data.get("subject", ""),
            date=data["date"],
            flags=list(data.get("flags") or []),
            size=int(data.get("size", 0)),
            is_read=bool(data.get("is_read", False)),
            is_starred=bool(data.get("is_starred", False)),
            synced_at=data.get("synced_at", ""),
            thread_id=data.get("thread_id"),
            from_=addresses("from"),
            to=addresses("to"),
            cc=addresses("cc"),
            bcc=addresses("bcc"),
            reply_to=addresses("reply_to"),
            text=data.get("text"),
            html=data.get("html"),
            snippet=data.get("snippet", ""),
            labels=data.get("labels"),
            attachments=[Attachment(**a) for a in data.get("attachments") or []],
        )


@dataclass
class SyncState:
    """Incremental sync bookmark for one (account, folder)."""

    account_id: str
    folder: str
    uid_validity: int
    last_seen_uid: int
    last_synced_at: datetime


@dataclass
class SyncResult:
    """Outcome of one folder sync attempt."""

    account_id: str
    folder: str
    new_emails: int = 0
    total_emails: int = 0
    error: str | None = None
    skipped_uids: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "account_id": self.account_id,
            "folder": self.folder,
            "new_emails": self.new_emails,
            "total_emails": self.total_emails,
        }
        if self.error is not None:
            result["error"] = self.error
        if self.skipped_uids:
            result["skipped_uids"] = list(self.skipped_uids)
        return result


@dataclass
class SyncProgress:
    """Live progress event emitted while a folder syncs."""

    account_id: str
    folder: str
    status: SyncStatus
    message: str
    new_emails: int | None = None
    total_emails: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "account_id": self.account_id,
            "folder": self.folder,
            "status": self.status,
            "message": self.message,
        }
        if self.new_emails is not None:
            payload["new_emails"] = self.new_emails
        if self.total_emails is not None:
            payload["total_emails"] = self.total_emails
        return payload
