"""Normalize fetched IMAP messages into Message records.

Parsing is pure: no I/O, no shared state. A message whose raw source cannot
be parsed raises MessageParseError for that message only, leaving the batch
policy (skip or abort) to the caller.
"""

import base64
import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from email import message_from_bytes, policy
from email.message import EmailMessage
from email.utils import getaddresses, parsedate_to_datetime
from html import unescape

from mailroom_mail.models import (
    FLAGGED_FLAG,
    SEEN_FLAG,
    Attachment,
    EmailAddress,
    Message,
    RawMessage,
)

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 200
NO_SUBJECT = "(No Subject)"

_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_NAMED_ADDRESS_RE = re.compile(r"^(.+?)\s*<(.+?)>$")


class MessageParseError(ValueError):
    """Raised when a single fetched message cannot be normalized."""

    def __init__(self, uid: int, reason: str) -> None:
        super().__init__(f"UID {uid}: {reason}")
        self.uid = uid
        self.reason = reason


def build_message_id(account_id: str, folder: str, uid: int) -> str:
    """Folder-scoped identity of a stored message."""
    return f"{account_id}:{folder}:{uid}"


def split_message_id(message_id: str) -> tuple[str, str, int] | None:
    """
    Invert build_message_id.

    Folder names may themselves contain ':', so only the first and last
    separators are significant.
    """
    parts = message_id.split(":")
    if len(parts) < 3:
        return None
    try:
        uid = int(parts[-1])
    except ValueError:
        return None
    return parts[0], ":".join(parts[1:-1]), uid


def strip_html(html: str) -> str:
    """Best-effort tag and entity removal. Never raises on malformed markup."""
    content = _STYLE_RE.sub("", html)
    content = _SCRIPT_RE.sub("", content)
    content = _TAG_RE.sub("", content)
    return unescape(content)


def generate_snippet(
    text: str | None,
    html: str | None,
    length: int = SNIPPET_LENGTH,
) -> str:
    """Short preview: plain text if present, else stripped HTML, whitespace collapsed."""
    content = (text or "").strip()
    if not content and html:
        content = strip_html(html)
    content = _WHITESPACE_RE.sub(" ", content).strip()
    return content[:length]


def extract_email_addresses(value: str) -> list[EmailAddress]:
    """Split a comma separated "Name <addr>, addr" string into addresses."""
    addresses: list[EmailAddress] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        match = _NAMED_ADDRESS_RE.match(item)
        if match:
            name, address = match.group(1).strip(), match.group(2).strip()
            addresses.append(EmailAddress(name=name, address=address))
        else:
            addresses.append(EmailAddress(name="", address=item))
    return addresses


def _parse_addresses(msg: EmailMessage, header: str) -> list[EmailAddress]:
    values = [str(v) for v in msg.get_all(header, [])]
    if not values:
        return []
    return [
        EmailAddress(name=name, address=address)
        for name, address in getaddresses(values)
        if name or address
    ]


def _decode_part(part: EmailMessage) -> str:
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        # Unknown or lying charset
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _body(msg: EmailMessage, subtype: str) -> str | None:
    part = msg.get_body(preferencelist=(subtype,))
    if part is None:
        return None
    content = _decode_part(part)
    return content or None


def _attachments(msg: EmailMessage) -> list[Attachment]:
    attachments: list[Attachment] = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        filename = part.get_filename()
        if not (part.is_attachment() or (filename and part.get_content_maintype() != "text")):
            continue
        payload = part.get_payload(decode=True) or b""
        attachments.append(
            Attachment(
                filename=filename or "untitled",
                content_type=part.get_content_type() or "application/octet-stream",
                size=len(payload),
                content=base64.b64encode(payload).decode("ascii"),
            )
        )
    return attachments


def _parse_date(msg: EmailMessage, fallback: datetime) -> datetime:
    try:
        value = msg.get("Date")
        if not value:
            return fallback
        parsed = parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _thread_hint(msg: EmailMessage) -> str | None:
    in_reply_to = str(msg.get("In-Reply-To") or "").strip()
    if in_reply_to:
        return in_reply_to
    references = str(msg.get("References") or "").split()
    return references[0] if references else None


def parse_raw_message(
    raw: RawMessage,
    account_id: str,
    folder: str,
    snippet_length: int = SNIPPET_LENGTH,
    now: datetime | None = None,
) -> Message:
    """
    Convert one fetched message into a normalized Message.

    Args:
        raw: Fetched UID, flags, size and raw RFC822 source
        account_id: Owning account
        folder: Mailbox the message was fetched from
        snippet_length: Character budget of the preview snippet
        now: Sync timestamp (defaults to current UTC time)

    Returns:
        The normalized Message

    Raises:
        MessageParseError: If the raw source is missing or unparseable
    """
    if not raw.source:
        raise MessageParseError(raw.uid, "message source is empty")

    now = now or datetime.now(UTC)
    message_key = build_message_id(account_id, folder, raw.uid)

    try:
        msg = message_from_bytes(raw.source, policy=policy.default)
        if not msg.keys():
            raise MessageParseError(raw.uid, "message has no headers")

        text = _body(msg, "plain")
        html = _body(msg, "html")
        flags = list(raw.flags)

        return Message(
            id=message_key,
            account_id=account_id,
            uid=raw.uid,
            folder=folder,
            message_id=str(msg.get("Message-ID") or "").strip() or message_key,
            thread_id=_thread_hint(msg),
            from_=_parse_addresses(msg, "From"),
            to=_parse_addresses(msg, "To"),
            cc=_parse_addresses(msg, "Cc"),
            bcc=_parse_addresses(msg, "Bcc"),
            reply_to=_parse_addresses(msg, "Reply-To"),
            subject=str(msg.get("Subject") or "").strip() or NO_SUBJECT,
            date=_parse_date(msg, now).isoformat(),
            text=text,
            html=html,
            snippet=generate_snippet(text, html, snippet_length),
            flags=flags,
            labels=list(raw.labels) if raw.labels is not None else None,
            size=raw.size or len(raw.source),
            attachments=_attachments(msg),
            is_read=SEEN_FLAG in flags,
            is_starred=FLAGGED_FLAG in flags,
            synced_at=now.isoformat(),
        )
    except MessageParseError:
        raise
    except Exception as e:
        raise MessageParseError(raw.uid, str(e) or type(e).__name__) from e


def parse_raw_messages(
    raws: Iterable[RawMessage],
    account_id: str,
    folder: str,
    snippet_length: int = SNIPPET_LENGTH,
) -> tuple[list[Message], list[MessageParseError]]:
    """
    Parse a fetched batch.

    Returns:
        Tuple of (parsed messages, per-message failures). One bad message
        never prevents the rest of the batch from parsing.
    """
    now = datetime.now(UTC)
    messages: list[Message] = []
    failures: list[MessageParseError] = []
    for raw in raws:
        try:
            messages.append(parse_raw_message(raw, account_id, folder, snippet_length, now))
        except MessageParseError as e:
            failures.append(e)
    return messages, failures
