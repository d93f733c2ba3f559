"""Kafka producer for sync progress events.

Events are small JSON documents keyed by account id, so every event of one
account lands on the same partition and is consumed in emission order.
"""

import json
import logging
import os
from collections.abc import Callable
from typing import Any, Literal

from confluent_kafka import Producer
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TOPIC_MAIL_SYNC_PROGRESS = "mailroom.mail.sync.progress.v1"


class KafkaDeliveryError(RuntimeError):
    """The broker rejected one or more queued events."""

    def __init__(self, failures: list[str]) -> None:
        super().__init__(f"{len(failures)} Kafka deliveries failed: {failures}")
        self.failures = failures


class KafkaProducerConfig(BaseModel):
    """Configuration for the progress producer."""

    bootstrap_servers: str = "localhost:9092"
    security_protocol: Literal["SASL_SSL", "PLAINTEXT"] = "PLAINTEXT"
    sasl_mechanism: str = "PLAIN"
    sasl_username: str = ""
    sasl_password: str = ""
    client_id: str = "mailroom-sync"
    progress_topic: str = TOPIC_MAIL_SYNC_PROGRESS
    linger_ms: int = Field(default=5, ge=0)
    flush_timeout_seconds: float = Field(default=10.0, gt=0)

    @classmethod
    def from_env(cls) -> "KafkaProducerConfig":
        """Load configuration from environment variables."""
        return cls(
            bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM", "PLAIN"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME", ""),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD", ""),
            client_id=os.getenv("KAFKA_CLIENT_ID", "mailroom-sync"),
            progress_topic=os.getenv("KAFKA_PROGRESS_TOPIC", TOPIC_MAIL_SYNC_PROGRESS),
            linger_ms=int(os.getenv("KAFKA_LINGER_MS", "5")),
            flush_timeout_seconds=float(os.getenv("KAFKA_FLUSH_TIMEOUT", "10")),
        )

    def client_settings(self) -> dict[str, Any]:
        """librdkafka settings for confluent_kafka.Producer."""
        settings: dict[str, Any] = {
            "bootstrap.servers": self.bootstrap_servers,
            "client.id": self.client_id,
            "security.protocol": self.security_protocol,
            "linger.ms": self.linger_ms,
            "enable.idempotence": True,
        }
        if self.security_protocol == "SASL_SSL":
            settings.update(
                {
                    "sasl.mechanism": self.sasl_mechanism,
                    "sasl.username": self.sasl_username,
                    "sasl.password": self.sasl_password,
                }
            )
        return settings


class KafkaProducer:
    """Publishes JSON events and collects delivery failures until the next flush."""

    def __init__(
        self,
        config: KafkaProducerConfig | None = None,
        client_factory: Callable[[dict[str, Any]], Any] = Producer,
    ) -> None:
        self.config = config or KafkaProducerConfig.from_env()
        self._producer = client_factory(self.config.client_settings())
        self._failures: list[str] = []
        self._closed = False

    def _on_delivery(self, err: Any, msg: Any) -> None:
        if err is None:
            logger.debug(
                "Delivered to %s[%d] at offset %d", msg.topic(), msg.partition(), msg.offset()
            )
            return
        failure = f"{msg.topic()}[{msg.partition()}] key={msg.key()!r}: {err}"
        logger.error("Kafka delivery failed: %s", failure)
        self._failures.append(failure)

    def publish(
        self,
        topic: str,
        key: str,
        value: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> None:
        """
        Queue a JSON event.

        Args:
            topic: Kafka topic name
            key: Partition key, the account id for progress events
            value: Event body, serialized compactly as JSON
            headers: Optional string headers

        Raises:
            RuntimeError: If the producer was closed
        """
        if self._closed:
            raise RuntimeError("Kafka producer is closed")

        message: dict[str, Any] = {
            "topic": topic,
            "key": key.encode("utf-8"),
            "value": json.dumps(value, default=str, separators=(",", ":")).encode("utf-8"),
            "on_delivery": self._on_delivery,
        }
        if headers:
            message["headers"] = [(k, v.encode("utf-8")) for k, v in headers.items()]

        try:
            self._producer.produce(**message)
        except BufferError:
            # Local queue full
            logger.warning("Kafka queue full, draining before retrying %s", topic)
            self._producer.poll(1.0)
            self._producer.produce(**message)

        self._producer.poll(0)

    def flush(self, timeout: float | None = None) -> int:
        """
        Wait for queued events to be delivered.

        Returns:
            Number of events still queued when the timeout expired

        Raises:
            KafkaDeliveryError: If the broker rejected any event since the last flush
        """
        remaining = self._producer.flush(
            self.config.flush_timeout_seconds if timeout is None else timeout
        )
        if remaining:
            logger.warning("%d Kafka events still queued after flush", remaining)

        if self._failures:
            failures, self._failures = self._failures, []
            raise KafkaDeliveryError(failures)

        return remaining

    def close(self) -> None:
        """Flush outstanding events. Later publishes raise."""
        if self._closed:
            return
        self._closed = True
        self.flush()
