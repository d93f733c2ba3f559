"""Mailroom Kafka producer utilities."""

from mailroom_kafka.producer import (
    TOPIC_MAIL_SYNC_PROGRESS,
    KafkaDeliveryError,
    KafkaProducer,
    KafkaProducerConfig,
)

__all__ = [
    "KafkaDeliveryError",
    "KafkaProducer",
    "KafkaProducerConfig",
    "TOPIC_MAIL_SYNC_PROGRESS",
]
