"""
Rolling spend window per loyalty card.

Each purchase is stored as a member ``"{transactionId}:{amount}"`` of the sorted
set ``customer_spend:{cardId}``, scored by arrival time in unix seconds. The
total is always recomputed from the live members after purging the expired
ones; no running sum is kept anywhere.

The purge / sum / add sequence is not atomic. It is safe only because every
event of a given card is routed to the same partition, and therefore to a
single worker at a time.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, NamedTuple

from common.events import LoyaltyEvent
from services.state_store.store import StateStore

logger = logging.getLogger(__name__)

SPEND_KEY_PREFIX = "customer_spend:"

# Keys outlive the window by a day so idle customers are eventually evicted.
EXPIRY_MARGIN = timedelta(days=1)


class SpendResult(NamedTuple):
    crossed: bool
    total: Decimal


def spend_key(card_id: str) -> str:
    return f"{SPEND_KEY_PREFIX}{card_id}"


def format_amount(amount: Decimal) -> str:
    # Plain notation without trailing zeros: 60.00 -> "60", 12.50 -> "12.5".
    text = format(amount.normalize(), "f")
    return "0" if text in ("-0", "") else text


def encode_member(transaction_id: str, amount: Decimal) -> str:
    return f"{transaction_id}:{format_amount(amount)}"


def member_amount(member: str) -> Decimal:
    """Amount stored in a set member; malformed members count as zero."""
    _, sep, amount_text = member.rpartition(":")
    if not sep:
        return Decimal(0)
    try:
        amount = Decimal(amount_text)
    except InvalidOperation:
        return Decimal(0)
    if not amount.is_finite():
        return Decimal(0)
    return amount


class SpendWindowAggregator:
    def __init__(self, store: StateStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def record_and_evaluate(
        self,
        event: LoyaltyEvent,
        window: timedelta,
        threshold: Decimal,
    ) -> SpendResult:
        """
        Record a purchase and report whether it pushed the card over ``threshold``.

        Only purchases with details count; any other event returns
        ``(False, 0)`` without touching the store. ``crossed`` is edge-triggered:
        it is True only when the total before this purchase was below the
        threshold and the total after it is at or above.

        A redelivered purchase (same transaction id and amount) overwrites its
        own member and is excluded from the previous total, so the reported
        total does not change on reprocessing.
        """
        if not event.contributes_to_spend:
            return SpendResult(False, Decimal(0))

        key = spend_key(event.card_id)
        amount = event.details.amount
        member = encode_member(event.transaction_id, amount)
        now = int(self._clock())

        self._store.purge_below(key, now - int(window.total_seconds()))

        previous_total = Decimal(0)
        for existing in self._store.range_all(key):
            if existing == member:
                continue
            previous_total += member_amount(existing)

        self._store.add_scored(key, member, now)
        self._store.set_expiry(key, int((window + EXPIRY_MARGIN).total_seconds()))

        new_total = previous_total + amount
        crossed = previous_total < threshold <= new_total
        logger.debug(
            "Spend for card %s: previous=%s new=%s threshold=%s crossed=%s",
            event.card_id,
            previous_total,
            new_total,
            threshold,
            crossed,
        )
        return SpendResult(crossed, new_total)

    def reset(self, card_id: str) -> bool:
        """Drop the card's spend history so accumulation restarts from zero."""
        if not card_id or not card_id.strip():
            logger.warning("Refusing to reset spend state for an empty card id.")
            return False
        logger.info("Resetting spend window for card %s", card_id)
        return self._store.delete(spend_key(card_id))


__all__ = [
    "SPEND_KEY_PREFIX",
    "SpendResult",
    "SpendWindowAggregator",
    "encode_member",
    "format_amount",
    "member_amount",
    "spend_key",
]
