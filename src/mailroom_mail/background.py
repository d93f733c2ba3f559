"""Periodic background sync of every account's essential folders."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mailroom_mail.account_registry import AccountRegistry, MailAccount
from mailroom_mail.folders import sync_folders
from mailroom_mail.models import SyncResult
from mailroom_mail.progress import ProgressCallback
from mailroom_mail.sync import MailSync

logger = logging.getLogger(__name__)


def _folders_for(account: MailAccount) -> list[str]:
    return sync_folders(account.provider)


class SyncRateLimiter:
    """Enforces a minimum interval between background runs."""

    def __init__(
        self,
        min_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self.last_run_at: float | None = None

    def seconds_until_available(self) -> float:
        if self.last_run_at is None:
            return 0.0
        elapsed = self._clock() - self.last_run_at
        return max(0.0, self.min_interval_seconds - elapsed)

    def try_acquire(self) -> bool:
        """Claim a run slot. Returns False while the interval has not elapsed."""
        if self.seconds_until_available() > 0:
            return False
        self.last_run_at = self._clock()
        return True


@dataclass
class BackgroundSyncReport:
    """Summary of one background run, or of a skipped one."""

    skipped: bool
    synced_at: datetime
    next_sync_available_in: float = 0.0
    accounts_synced: int = 0
    accounts_failed: int = 0
    total_new_emails: int = 0
    results: list[SyncResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "skipped": self.skipped,
            "synced_at": self.synced_at.isoformat(),
            "next_sync_available_in": self.next_sync_available_in,
            "accounts_synced": self.accounts_synced,
            "accounts_failed": self.accounts_failed,
            "total_new_emails": self.total_new_emails,
            "results": [r.to_dict() for r in self.results],
        }


class BackgroundSync:
    """Syncs INBOX, Sent and Drafts of every registered account, rate limited."""

    def __init__(
        self,
        sync: MailSync,
        registry: AccountRegistry,
        limiter: SyncRateLimiter | None = None,
    ) -> None:
        self.sync = sync
        self.registry = registry
        self.limiter = limiter or SyncRateLimiter(sync.config.min_background_interval_seconds)

    async def run(self, on_progress: ProgressCallback | None = None) -> BackgroundSyncReport:
        """
        Run one background sync unless the previous run was too recent.

        Accounts are re-read from the registry on every run so newly added
        or removed accounts are picked up.

        Returns:
            BackgroundSyncReport; ``skipped`` is set when rate limited
        """
        if not self.limiter.try_acquire():
            wait = self.limiter.seconds_until_available()
            logger.debug("Background sync skipped, next run available in %.1fs", wait)
            return BackgroundSyncReport(
                skipped=True,
                synced_at=datetime.now(UTC),
                next_sync_available_in=wait,
            )

        accounts = await self.registry.list_accounts()
        logger.info("Background sync starting for %d accounts", len(accounts))

        outcomes = await self.sync.sync_each_account(accounts, _folders_for, on_progress)

        report = BackgroundSyncReport(
            skipped=False,
            synced_at=datetime.now(UTC),
            next_sync_available_in=self.limiter.min_interval_seconds,
        )
        for account, results in outcomes:
            report.results.extend(results)
            report.total_new_emails += sum(r.new_emails for r in results)
            if all(r.ok for r in results):
                report.accounts_synced += 1
                await self.registry.update_last_synced(account.id)
            else:
                report.accounts_failed += 1

        logger.info(
            "Background sync finished: %d synced, %d failed, %d new messages",
            report.accounts_synced,
            report.accounts_failed,
            report.total_new_emails,
        )
        return report
