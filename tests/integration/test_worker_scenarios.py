"""
End-to-end worker scenarios: replayed Kafka messages flow through a real
StreamProcessor, rule and aggregator backed by the in-memory state store.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, List
from unittest.mock import MagicMock

import pytest

from common.config import FraudRuleConfig, RewardRuleConfig
from common.events import FraudAlertEvent, RewardEvent
from services.aggregators.rate_window import RateWindowDetector, rate_key
from services.aggregators.spend_window import SpendWindowAggregator, spend_key
from services.stream_processor.rules import FraudRule, RewardRule
from services.stream_processor.worker import ProcessorState, StreamProcessor

INPUT_TOPIC = "attivita-carte-fedelta"


@pytest.fixture
def reward_cfg() -> RewardRuleConfig:
    return RewardRuleConfig(output_topic="coupon-generati", spend_threshold=Decimal("100.00"), window_days=30)


@pytest.fixture
def fraud_cfg() -> FraudRuleConfig:
    return FraudRuleConfig(output_topic="allarmi-frode", max_transactions=5, window_seconds=60)


def _drive(consumer: Any, emitter: Any, rule: Any, worker: Any) -> StreamProcessor:
    processor = StreamProcessor(consumer, emitter, rule, INPUT_TOPIC, worker=worker)
    consumer.on_exhausted = processor.stop
    processor.run()
    return processor


# ---------------------------------------------------------------------------
# Reward engine
# ---------------------------------------------------------------------------


class TestRewardEngine:
    def test_coupon_issued_once_and_state_reset(
        self, consumer_for, make_messages, event_bytes, emitter, fast_worker, store, clock, reward_cfg
    ) -> None:
        consumer = consumer_for(
            make_messages(
                event_bytes(transaction_id="T1", amount="60.00"),
                event_bytes(transaction_id="T2", amount="50.00"),
                event_bytes(transaction_id="T3", amount="20.00"),
            )
        )
        rule = RewardRule(SpendWindowAggregator(store, clock=clock), reward_cfg)

        processor = _drive(consumer, emitter, rule, fast_worker)

        [reward] = emitter.published
        assert reward["topic"] == "coupon-generati"
        assert reward["key"] == "CARD-001"
        assert isinstance(reward["payload"], RewardEvent)
        assert reward["payload"].coupon_code.startswith("WELCOME20-")
        # Only the purchase after the reset is left in the window.
        assert store.range_all(spend_key("CARD-001")) == ["T3:20"]
        assert consumer.committed == [0, 1, 2]
        assert processor.state is ProcessorState.STOPPED

    def test_malformed_message_between_purchases(
        self, consumer_for, make_messages, event_bytes, emitter, fast_worker, store, clock, reward_cfg
    ) -> None:
        consumer = consumer_for(
            make_messages(
                event_bytes(transaction_id="T1", amount="30.00"),
                b'{"idCarta": "CARD-001", "idTransazione":',
                event_bytes(transaction_id="T2", amount="45.50"),
            )
        )
        aggregator = SpendWindowAggregator(store, clock=clock)

        _drive(consumer, emitter, RewardRule(aggregator, reward_cfg), fast_worker)

        members = store.range_all(spend_key("CARD-001"))
        assert sorted(members) == ["T1:30", "T2:45.5"]
        assert emitter.published == []
        assert consumer.committed == [0, 1, 2]

    def test_redemption_never_writes_state(
        self, consumer_for, make_messages, event_bytes, emitter, fast_worker, store, clock, reward_cfg
    ) -> None:
        spy = MagicMock(wraps=store)
        consumer = consumer_for(make_messages(event_bytes(kind="Riscatto", amount="0", points=10)))

        _drive(consumer, emitter, RewardRule(SpendWindowAggregator(spy, clock=clock), reward_cfg), fast_worker)

        assert spy.method_calls == []
        assert consumer.committed == [0]

    def test_cards_accumulate_independently(
        self, consumer_for, kafka_message, event_bytes, emitter, fast_worker, store, clock, reward_cfg
    ) -> None:
        values: List[bytes] = [
            event_bytes(card_id="A", transaction_id="A1", amount="70"),
            event_bytes(card_id="B", transaction_id="B1", amount="70"),
            event_bytes(card_id="A", transaction_id="A2", amount="40"),
        ]
        consumer = consumer_for([kafka_message(value=v, offset=i) for i, v in enumerate(values)])

        _drive(consumer, emitter, RewardRule(SpendWindowAggregator(store, clock=clock), reward_cfg), fast_worker)

        assert [p["key"] for p in emitter.published] == ["A"]
        assert store.range_all(spend_key("B")) == ["B1:70"]


# ---------------------------------------------------------------------------
# Fraud detector
# ---------------------------------------------------------------------------


class TestFraudDetector:
    def test_sixth_transaction_raises_alert(
        self, consumer_for, make_messages, event_bytes, emitter, fast_worker, store, fraud_cfg
    ) -> None:
        consumer = consumer_for(make_messages(*[event_bytes(transaction_id=f"T{i}") for i in range(1, 7)]))
        detector = RateWindowDetector(store)

        _drive(consumer, emitter, FraudRule(detector, fraud_cfg), fast_worker)

        [alert] = emitter.published
        assert alert["topic"] == "allarmi-frode"
        payload = alert["payload"]
        assert isinstance(payload, FraudAlertEvent)
        assert payload.suspicious_transaction_id == "T6"
        assert payload.message == "Detected 6 transactions in 60 seconds."
        assert detector.current_count("CARD-001") == 6
        assert consumer.committed == [0, 1, 2, 3, 4, 5]

    def test_counter_expires_with_the_window(
        self, consumer_for, make_messages, event_bytes, emitter, fast_worker, store, clock, fraud_cfg
    ) -> None:
        consumer = consumer_for(make_messages(*[event_bytes(transaction_id=f"T{i}") for i in range(5)]))
        _drive(consumer, emitter, FraudRule(RateWindowDetector(store), fraud_cfg), fast_worker)
        assert store.get(rate_key("CARD-001")) == 5

        clock.advance(61)

        assert store.get(rate_key("CARD-001")) is None
        assert emitter.published == []
