from __future__ import annotations

import logging

from confluent_kafka import Consumer

from common.config import KafkaConfig

logger = logging.getLogger(__name__)


def build_consumer(cfg: KafkaConfig) -> Consumer:
    """Consumer for the inbound topic with auto-commit disabled."""
    logger.info(
        "Initialising Kafka consumer (bootstrap_servers=%s, group_id=%s, topic=%s)",
        cfg.bootstrap_servers,
        cfg.group_id,
        cfg.input_topic,
    )
    return Consumer(cfg.consumer_settings())


__all__ = ["build_consumer"]
