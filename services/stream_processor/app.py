"""
Wiring for the two worker processes: reward engine and fraud detector.
"""

from __future__ import annotations

import logging
import signal
from typing import Any

from common.config import FraudDetectorConfig, RewardEngineConfig
from services.aggregators.rate_window import RateWindowDetector
from services.aggregators.spend_window import SpendWindowAggregator
from services.kafka.consumer import build_consumer
from services.kafka.producer import build_emitter
from services.state_store.store import build_redis_store
from services.stream_processor.rules import FraudRule, RewardRule
from services.stream_processor.worker import StreamProcessor

logger = logging.getLogger(__name__)


def build_reward_engine(cfg: RewardEngineConfig) -> StreamProcessor:
    logger.info(
        "Reward rule loaded: threshold %s over %d days, coupon valid %d days.",
        cfg.rule.spend_threshold,
        cfg.rule.window_days,
        cfg.rule.validity_days,
    )
    store = build_redis_store(cfg.redis)
    rule = RewardRule(SpendWindowAggregator(store), cfg.rule)
    return StreamProcessor(
        consumer=build_consumer(cfg.kafka),
        emitter=build_emitter(cfg.kafka, publish_timeout_seconds=cfg.worker.publish_timeout_seconds),
        rule=rule,
        input_topic=cfg.kafka.input_topic,
        worker=cfg.worker,
        dead_letter_topic=cfg.kafka.dead_letter_topic,
        on_stopped=store.close,
    )


def build_fraud_detector(cfg: FraudDetectorConfig) -> StreamProcessor:
    logger.info(
        "Fraud rule loaded: max %d transactions in %d seconds.",
        cfg.rule.max_transactions,
        cfg.rule.window_seconds,
    )
    store = build_redis_store(cfg.redis)
    rule = FraudRule(RateWindowDetector(store), cfg.rule)
    return StreamProcessor(
        consumer=build_consumer(cfg.kafka),
        emitter=build_emitter(cfg.kafka, publish_timeout_seconds=cfg.worker.publish_timeout_seconds),
        rule=rule,
        input_topic=cfg.kafka.input_topic,
        worker=cfg.worker,
        dead_letter_topic=cfg.kafka.dead_letter_topic,
        on_stopped=store.close,
    )


def run_until_signalled(processor: StreamProcessor) -> None:
    """Run ``processor`` in the foreground; SIGINT/SIGTERM trigger a graceful stop."""

    def shutdown(_signum: int, _frame: Any) -> None:
        processor.stop()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)
    processor.run()


__all__ = ["build_fraud_detector", "build_reward_engine", "run_until_signalled"]
