"""Provider-specific folder names."""

from typing import Literal

Provider = Literal["gmail", "outlook", "custom"]

INBOX = "INBOX"

STANDARD_FOLDERS: dict[str, dict[str, str]] = {
    "gmail": {
        "inbox": INBOX,
        "sent": "[Gmail]/Sent Mail",
        "drafts": "[Gmail]/Drafts",
        "trash": "[Gmail]/Trash",
        "spam": "[Gmail]/Spam",
        "starred": "[Gmail]/Starred",
        "important": "[Gmail]/Important",
        "all_mail": "[Gmail]/All Mail",
    },
    "outlook": {
        "inbox": INBOX,
        "sent": "Sent Items",
        "drafts": "Drafts",
        "trash": "Deleted Items",
        "spam": "Junk Email",
        "archive": "Archive",
    },
    "custom": {
        "inbox": INBOX,
        "sent": "Sent",
        "drafts": "Drafts",
        "trash": "Trash",
        "spam": "Spam",
    },
}

_DISPLAY_NAMES = {
    "INBOX": "Inbox",
    "Sent Items": "Sent",
    "Sent Mail": "Sent",
    "Deleted Items": "Trash",
    "Junk Email": "Spam",
}


def _folders_for(provider: str) -> dict[str, str]:
    try:
        return STANDARD_FOLDERS[provider]
    except KeyError:
        raise ValueError(f"Unsupported provider: {provider}") from None


def standard_folders(provider: str) -> list[str]:
    """Folders worth a full sync for a provider."""
    names = _folders_for(provider)
    keys = ["inbox", "sent", "drafts", "trash"]
    if provider == "gmail":
        keys.append("all_mail")
    return [names[k] for k in keys]


def essential_folders(provider: str) -> list[str]:
    """INBOX, Sent and Drafts: the folders the background sync keeps fresh."""
    names = _folders_for(provider)
    return [names["inbox"], names["sent"], names["drafts"]]


def normalize_folder_name(folder: str) -> str:
    """Friendly display name for a server folder path."""
    if folder.startswith("[Gmail]/"):
        folder = folder[len("[Gmail]/") :]
    return _DISPLAY_NAMES.get(folder, folder)


def sync_folders(provider: str, full: bool = False) -> list[str]:
    """
    Folders a sync pass covers for a provider.

    Args:
        provider: Account provider tag
        full: Standard folders instead of the essential ones

    Returns:
        Folder paths; ``[INBOX]`` for an unknown provider so the attempt
        and its failure are still recorded
    """
    try:
        return standard_folders(provider) if full else essential_folders(provider)
    except ValueError:
        return [INBOX]
