"""Progress callbacks for live sync consumers."""

import logging
from collections.abc import Callable

from mailroom_kafka.producer import TOPIC_MAIL_SYNC_PROGRESS, KafkaProducer
from mailroom_mail.models import SyncProgress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncProgress], None]


class ProgressRecorder:
    """Keeps every event in memory, for polling endpoints and tests."""

    def __init__(self) -> None:
        self.events: list[SyncProgress] = []

    def __call__(self, progress: SyncProgress) -> None:
        self.events.append(progress)

    def statuses(self, account_id: str | None = None, folder: str | None = None) -> list[str]:
        """Event statuses in delivery order, optionally filtered."""
        return [
            e.status
            for e in self.events
            if (account_id is None or e.account_id == account_id)
            and (folder is None or e.folder == folder)
        ]

    def latest(self, account_id: str, folder: str) -> SyncProgress | None:
        for event in reversed(self.events):
            if event.account_id == account_id and event.folder == folder:
                return event
        return None


class KafkaProgressPublisher:
    """Publishes progress events for server-push consumers, keyed by account."""

    def __init__(self, producer: KafkaProducer, topic: str = TOPIC_MAIL_SYNC_PROGRESS) -> None:
        self.producer = producer
        self.topic = topic

    def __call__(self, progress: SyncProgress) -> None:
        self.producer.publish(
            topic=self.topic,
            key=progress.account_id,
            value=progress.to_dict(),
            headers={"status": progress.status, "folder": progress.folder},
        )

    def close(self) -> None:
        self.producer.close()
