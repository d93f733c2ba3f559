#!/usr/bin/env python3
"""
Run one mailbox sync pass over the registered accounts.

Usage:
    python -m scripts.sync_mailboxes            # INBOX of every account
    python -m scripts.sync_mailboxes --full     # standard folders per provider
    python -m scripts.sync_mailboxes --background
    python -m scripts.sync_mailboxes --account personal-gmail

Environment variables:
    POSTGRES_HOST, POSTGRES_PORT, POSTGRES_DB, POSTGRES_USER, POSTGRES_PASSWORD
    MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, STORAGE_BUCKET
    KAFKA_BOOTSTRAP_SERVERS, KAFKA_PROGRESS_TOPIC (when PUBLISH_PROGRESS=true)
    GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET, OUTLOOK_CLIENT_ID, OUTLOOK_CLIENT_SECRET
    SYNC_* tuning variables (see mailroom_common.config.SyncConfig)
    PUBLISH_PROGRESS (default: false) - publish progress events to Kafka
"""

import argparse
import asyncio
import logging
import os
import sys

logger = logging.getLogger("scripts.sync_mailboxes")


def get_env(name: str, default: str = "") -> str:
    """Get environment variable with optional default."""
    return os.getenv(name, default)


async def run(args: argparse.Namespace) -> int:
    """Wire the stores together and run the requested sync."""
    from mailroom_common import configure_logging, get_config
    from mailroom_kafka import KafkaProducer
    from mailroom_mail import (
        AccountRegistry,
        BackgroundSync,
        ConnectionProvider,
        KafkaProgressPublisher,
        MailSync,
        ObjectMessageStore,
        PostgresSyncStateStore,
    )
    from mailroom_storage import ObjectStore

    config = get_config()
    configure_logging(config.log_level)

    registry = AccountRegistry(config.postgres)
    object_store = ObjectStore()
    object_store.ensure_bucket()

    connections = ConnectionProvider.default(config.sync, on_token_refresh=registry.update_tokens)
    sync = MailSync(
        connections=connections,
        states=PostgresSyncStateStore(config.postgres),
        messages=ObjectMessageStore(object_store),
        accounts=registry,
        config=config.sync,
    )

    publisher = None
    if get_env("PUBLISH_PROGRESS", "false").lower() == "true":
        producer = KafkaProducer()
        publisher = KafkaProgressPublisher(producer, producer.config.progress_topic)

    try:
        if args.background:
            report = await BackgroundSync(sync, registry).run(publisher)
            logger.info(
                "Background sync: %d accounts synced, %d failed, %d new messages",
                report.accounts_synced,
                report.accounts_failed,
                report.total_new_emails,
            )
            return 1 if report.accounts_failed else 0

        accounts = await registry.list_accounts()
        if args.account:
            accounts = [a for a in accounts if a.id == args.account]
            if not accounts:
                logger.error("Account %s is not registered", args.account)
                return 1

        if args.full:
            results = await sync.full_sync(accounts, publisher)
        else:
            results = await sync.quick_sync(accounts, publisher)
    finally:
        if publisher is not None:
            publisher.close()

    for result in results:
        if result.ok:
            logger.info(
                "  %s %s: %d new, %d total",
                result.account_id,
                result.folder,
                result.new_emails,
                result.total_emails,
            )
        else:
            logger.error("  %s %s: %s", result.account_id, result.folder, result.error)

    return 0 if all(r.ok for r in results) else 1


def main() -> int:
    """Parse arguments and run the sync."""
    parser = argparse.ArgumentParser(description="Sync mailboxes of registered accounts")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--full", action="store_true", help="sync standard folders, not just INBOX")
    mode.add_argument("--background", action="store_true", help="rate-limited essential folders")
    parser.add_argument("--account", help="only sync this account id")
    return asyncio.run(run(parser.parse_args()))


if __name__ == "__main__":
    sys.exit(main())
