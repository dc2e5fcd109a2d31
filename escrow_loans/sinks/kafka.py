"""Kafka sink for loan lifecycle events."""

import logging
from dataclasses import dataclass
from typing import Any

from confluent_kafka import Producer

from escrow_loans.config import KafkaConfig
from escrow_loans.exceptions import SinkError
from escrow_loans.models import LoanEvent
from escrow_loans.sinks.serialization import encode_event

logger = logging.getLogger(__name__)


@dataclass
class DeliveryStats:
    """Delivery report counters."""

    sent: int = 0
    delivered: int = 0
    failed: int = 0

    @property
    def in_flight(self) -> int:
        return self.sent - self.delivered - self.failed


class KafkaSink:
    """Publish lifecycle events keyed by loan id.

    Every event of one loan lands on one partition, so consumers see that
    loan's transitions in order.
    """

    def __init__(self, config: KafkaConfig | str, topic: str | None = None) -> None:
        """Create the producer.

        Parameters
        ----------
        config : KafkaConfig | str
            Producer configuration or a bootstrap servers string.
        topic : str | None
            Overrides ``config.topic``.
        """
        if isinstance(config, str):
            config = KafkaConfig(bootstrap_servers=config)
        if not config.enabled:
            raise SinkError("KAFKA_BOOTSTRAP_SERVERS is not set")

        self.config = config
        self.topic = topic or config.topic
        self.producer = Producer(config.to_dict())
        self.stats = DeliveryStats()
        logger.info("Publishing lifecycle events to %s on %s", self.topic, config.bootstrap_servers)

    def _on_delivery(self, err: Any, msg: Any) -> None:
        if err is not None:
            self.stats.failed += 1
            logger.error("Lifecycle event not delivered: %s", err)
            return
        self.stats.delivered += 1
        logger.debug("Lifecycle event delivered to %s[%d]@%d", msg.topic(), msg.partition(), msg.offset())

    def write(self, event: LoanEvent) -> None:
        try:
            self.producer.produce(
                self.topic,
                key=event.subject,
                value=encode_event(event),
                headers=[
                    ("event_type", event.event_type.encode("utf-8")),
                    ("event_id", event.event_id.encode("utf-8")),
                ],
                on_delivery=self._on_delivery,
            )
        except BufferError as e:
            raise SinkError(f"Kafka producer queue is full: {e}") from e
        self.stats.sent += 1
        self.producer.poll(0)

    def close(self, timeout: float = 30.0) -> None:
        """Wait for outstanding deliveries."""
        remaining = self.producer.flush(timeout)
        if remaining:
            logger.warning("%d lifecycle event(s) undelivered after %.0fs", remaining, timeout)
        logger.info(
            "Kafka sink closed: sent=%d delivered=%d failed=%d",
            self.stats.sent,
            self.stats.delivered,
            self.stats.failed,
        )
