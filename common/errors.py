"""
Error taxonomy shared by the loyalty workers.

The stream processor decides what to do with a message purely from the
exception class it sees:

- ``MalformedEventError``: the payload can never be processed. Log, commit, skip.
- ``TransientInfraError``: Redis or Kafka is unreachable or slow. Do not commit;
  rewind and retry after a short back-off.
- ``ConfigurationError``: raised while loading settings, before any consumer
  exists. The process exits.
"""

from __future__ import annotations


class LoyaltySignalsError(Exception):
    """Base class for all errors raised by this package."""


class MalformedEventError(LoyaltySignalsError):
    """An inbound message could not be decoded into a LoyaltyEvent."""


class TransientInfraError(LoyaltySignalsError):
    """A retryable failure talking to the state store or the event log."""


class StateStoreUnavailableError(TransientInfraError):
    """The state store rejected or timed out a round-trip."""


class PublishError(TransientInfraError):
    """A downstream event was not acknowledged by the broker."""


class ConfigurationError(LoyaltySignalsError):
    """A required setting is absent or invalid at startup."""


__all__ = [
    "LoyaltySignalsError",
    "MalformedEventError",
    "TransientInfraError",
    "StateStoreUnavailableError",
    "PublishError",
    "ConfigurationError",
]
