"""
Fixed-window transaction counter per loyalty card.

The counter ``fraud_check:{cardId}`` gets its TTL exactly once, when the first
increment of a window brings it to 1. Later increments leave the TTL alone,
so the window is anchored to its first hit and only resets on expiry. Bursts
straddling two windows can therefore reach up to twice the limit undetected.

If that first EXPIRE fails, the retried message finds a counter above 1 with
no TTL; later increments set one only in that case, never replacing an
existing TTL.
"""

from __future__ import annotations

import logging

from services.state_store.store import StateStore

logger = logging.getLogger(__name__)

RATE_KEY_PREFIX = "fraud_check:"


def rate_key(card_id: str) -> str:
    return f"{RATE_KEY_PREFIX}{card_id}"


class RateWindowDetector:
    def __init__(self, store: StateStore) -> None:
        self._store = store

    def register_and_check(self, card_id: str, max_transactions: int, window_seconds: int) -> bool:
        """Count one transaction and return True once the card exceeds ``max_transactions``."""
        if not card_id:
            return False

        key = rate_key(card_id)
        count = self._store.increment(key)
        if count == 1:
            self._store.set_expiry(key, window_seconds)
        elif self._store.expire_if_unset(key, window_seconds):
            # The first hit's EXPIRE failed and the message was retried.
            logger.warning("Counter %s had no expiry; window restarted with %ds TTL.", key, window_seconds)

        suspicious = count > max_transactions
        if suspicious:
            logger.warning(
                "Suspicious activity for card %s: %d transactions in %d seconds.",
                card_id,
                count,
                window_seconds,
            )
        return suspicious

    def current_count(self, card_id: str) -> int:
        if not card_id:
            return 0
        return self._store.get(rate_key(card_id)) or 0


__all__ = ["RATE_KEY_PREFIX", "RateWindowDetector", "rate_key"]
