#!/usr/bin/env python3
"""
Check a password IMAP login: list folders and show mailbox counters.

Usage:
    python -m scripts.check_imap_connection

Environment variables:
    IMAP_HOST, IMAP_PORT (default: 993), IMAP_USERNAME, IMAP_PASSWORD
    IMAP_FOLDERS (default: INBOX) - comma separated
"""

import os
import sys


def get_env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def check_imap_connection() -> int:
    """Log in, list folders and print STATUS counters for each requested folder."""
    from mailroom_mail.connectors.imap_connector import ImapConfig, ImapConnector, ImapError

    host = get_env("IMAP_HOST")
    port = int(get_env("IMAP_PORT", "993"))
    username = get_env("IMAP_USERNAME")
    password = get_env("IMAP_PASSWORD")
    folders = [f.strip() for f in get_env("IMAP_FOLDERS", "INBOX").split(",")]

    if not host or not username or not password:
        print("ERROR: IMAP_HOST, IMAP_USERNAME, and IMAP_PASSWORD must be set")
        print(f"  IMAP_HOST={host or '(not set)'}")
        print(f"  IMAP_USERNAME={username or '(not set)'}")
        print(f"  IMAP_PASSWORD={'***' if password else '(not set)'}")
        return 1

    print("\n" + "=" * 60)
    print(f"Checking IMAP connection to {host}:{port} as {username}")
    print("=" * 60)

    config = ImapConfig(host=host, port=port, username=username, password=password)

    try:
        with ImapConnector(config) as imap:
            all_folders = imap.list_folders()
            print(f"\nFound {len(all_folders)} folders:")
            for folder in all_folders[:10]:
                print(f"  - {folder}")
            if len(all_folders) > 10:
                print(f"  ... and {len(all_folders) - 10} more")

            for folder in folders:
                status = imap.mailbox_status(folder)
                print(
                    f"\n{folder}: {status.exists} messages, {status.unseen} unseen, "
                    f"UIDVALIDITY {status.uid_validity}, UIDNEXT {status.uid_next}"
                )
    except ImapError as e:
        print(f"\nConnection check failed: {e}")
        return 1

    print("\nIMAP connection is working.")
    return 0


if __name__ == "__main__":
    sys.exit(check_imap_connection())
