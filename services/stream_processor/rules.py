"""
Business rules plugged into the shared stream-processing loop.

A rule turns one ``LoyaltyEvent`` into either nothing or a derived event to
publish. ``after_publish`` runs only once the broker has acknowledged that
derived event, and before the inbound offset is committed.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import BaseModel

from common.config import FraudRuleConfig, RewardRuleConfig
from common.events import FraudAlertEvent, LoyaltyEvent, RewardEvent
from services.aggregators.rate_window import RateWindowDetector
from services.aggregators.spend_window import SpendWindowAggregator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_coupon_code(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:5].upper()}"


class Rule(ABC):
    name: str = "rule"

    @property
    @abstractmethod
    def output_topic(self) -> str: ...

    @abstractmethod
    def evaluate(self, event: LoyaltyEvent) -> Optional[BaseModel]:
        """Update state for ``event``; return the event to publish, if any."""

    def after_publish(self, event: LoyaltyEvent, emitted: BaseModel) -> None:
        return None


class RewardRule(Rule):
    """Issues a coupon when the card's rolling spend crosses the threshold."""

    name = "reward"

    def __init__(
        self,
        aggregator: SpendWindowAggregator,
        cfg: RewardRuleConfig,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._aggregator = aggregator
        self._cfg = cfg
        self._now = now
        self._window = timedelta(days=cfg.window_days)

    @property
    def output_topic(self) -> str:
        return self._cfg.output_topic

    def evaluate(self, event: LoyaltyEvent) -> Optional[RewardEvent]:
        crossed, total = self._aggregator.record_and_evaluate(event, self._window, self._cfg.spend_threshold)
        if not crossed:
            return None

        logger.info(
            "Card %s crossed the spend threshold %s (total %s over %d days).",
            event.card_id,
            self._cfg.spend_threshold,
            total,
            self._cfg.window_days,
        )
        issued_at = self._now()
        return RewardEvent(
            card_id=event.card_id,
            coupon_code=generate_coupon_code(self._cfg.coupon_prefix),
            description=self._cfg.description,
            expires_at=issued_at + timedelta(days=self._cfg.validity_days),
            timestamp=issued_at,
        )

    def after_publish(self, event: LoyaltyEvent, emitted: BaseModel) -> None:
        # Accumulation restarts only once the reward is durable.
        self._aggregator.reset(event.card_id)


class FraudRule(Rule):
    """Raises an alert when a card transacts too often inside the rate window."""

    name = "fraud"

    def __init__(
        self,
        detector: RateWindowDetector,
        cfg: FraudRuleConfig,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._detector = detector
        self._cfg = cfg
        self._now = now

    @property
    def output_topic(self) -> str:
        return self._cfg.output_topic

    def evaluate(self, event: LoyaltyEvent) -> Optional[FraudAlertEvent]:
        suspicious = self._detector.register_and_check(
            event.card_id, self._cfg.max_transactions, self._cfg.window_seconds
        )
        if not suspicious:
            return None

        count = self._detector.current_count(event.card_id)
        return FraudAlertEvent(
            card_id=event.card_id,
            suspicious_transaction_id=event.transaction_id or "N/A",
            alarm_kind=self._cfg.alarm_kind,
            message=f"Detected {count} transactions in {self._cfg.window_seconds} seconds.",
            severity=self._cfg.severity,
            raised_at=self._now(),
        )


__all__ = ["FraudRule", "RewardRule", "Rule", "generate_coupon_code"]
