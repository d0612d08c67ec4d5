from __future__ import annotations

"""
Downstream emitter: publishes derived events (rewards, fraud alerts) to Kafka.

Unlike a fire-and-forget producer, ``publish`` blocks until the broker has
acknowledged the message, so the worker can commit its inbound offset only
after the derived event is durable. Failures are raised as ``PublishError``
and are always retried by the caller.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from confluent_kafka import KafkaException, Producer
from pydantic import BaseModel

from common.config import KafkaConfig
from common.errors import PublishError
from common.events import encode_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryAck:
    topic: str
    partition: int
    offset: int


class DownstreamEmitter:
    def __init__(self, producer: Producer, publish_timeout_seconds: float = 10.0) -> None:
        self._producer = producer
        self._publish_timeout = publish_timeout_seconds

    def publish(
        self,
        topic: str,
        key: Union[str, bytes, None],
        payload: Union[BaseModel, bytes],
    ) -> DeliveryAck:
        """
        Produce one message keyed by ``key`` (the card id) and wait for its ack.

        Keying by card id keeps every event of a customer on one partition.
        """
        value = payload if isinstance(payload, (bytes, bytearray)) else encode_event(payload)
        key_bytes = key.encode("utf-8") if isinstance(key, str) else key
        report: Dict[str, Any] = {}

        def _on_delivery(err: Any, msg: Any) -> None:
            report["error"] = err
            report["message"] = msg

        try:
            self._producer.produce(topic, key=key_bytes, value=value, on_delivery=_on_delivery)
        except (BufferError, KafkaException) as e:
            raise PublishError(f"Failed to enqueue message for topic {topic}: {e}") from e

        deadline = time.monotonic() + self._publish_timeout
        while not report:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PublishError(
                    f"No delivery report from topic {topic} within {self._publish_timeout:.1f}s"
                )
            try:
                self._producer.flush(remaining)
            except KafkaException as e:
                raise PublishError(f"Flush failed for topic {topic}: {e}") from e

        if report["error"] is not None:
            raise PublishError(f"Delivery to topic {topic} failed: {report['error']}")

        msg = report["message"]
        return DeliveryAck(topic=msg.topic(), partition=msg.partition(), offset=msg.offset())

    def flush(self, timeout_sec: float = 5.0) -> int:
        """
        Flush outstanding messages; returns how many are still undelivered.
        """
        remaining = self._producer.flush(timeout_sec)
        if remaining > 0:
            logger.warning("Kafka producer flush timed out; %d messages may be lost", remaining)
        return remaining


def build_emitter(
    cfg: KafkaConfig,
    publish_timeout_seconds: float = 10.0,
    extra: Optional[dict] = None,
) -> DownstreamEmitter:
    settings = cfg.producer_settings()
    settings.update(extra or {})
    logger.info("Initialising Kafka producer (bootstrap_servers=%s)", cfg.bootstrap_servers)
    return DownstreamEmitter(Producer(settings), publish_timeout_seconds=publish_timeout_seconds)


__all__ = ["DeliveryAck", "DownstreamEmitter", "build_emitter"]
