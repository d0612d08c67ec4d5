"""
Wire models for the loyalty event topics.

Inbound events arrive as JSON produced by the ingestion API, with Italian
field names (``idCarta``, ``tipoEvento``, ...). Field names are matched
case-insensitively. Outbound events are serialized with the same naming
convention so downstream consumers (notifications, dashboards) can share
the schema.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from common.errors import MalformedEventError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventKind(str, Enum):
    PURCHASE = "Acquisto"
    REDEMPTION = "Riscatto"
    OTHER = "Other"

    @classmethod
    def from_wire(cls, value: object) -> "EventKind":
        """Map a raw ``tipoEvento`` value to a kind; anything unknown is OTHER."""
        if isinstance(value, EventKind):
            return value
        if isinstance(value, str):
            normalized = value.strip().casefold()
            for kind in (cls.PURCHASE, cls.REDEMPTION):
                if kind.value.casefold() == normalized:
                    return kind
        return cls.OTHER


class AlertSeverity(str, Enum):
    INFO = "Info"
    WARNING = "Warning"
    CRITICAL = "Critical"


class _WireModel(BaseModel):
    """Base for inbound models: accepts wire keys in any letter case."""

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _match_keys_case_insensitively(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known: Dict[str, str] = {}
        for name, field in cls.model_fields.items():
            known[name.lower()] = name
            if field.alias:
                known[field.alias.lower()] = field.alias
        return {known.get(str(key).lower(), key): value for key, value in data.items()}


class EventDetails(_WireModel):
    amount: Decimal = Field(default=Decimal("0"), alias="importo", allow_inf_nan=False)
    points: int = Field(default=0, alias="punti")


class LoyaltyEvent(_WireModel):
    """One loyalty-card activity event (``attivita-carte-fedelta`` topic)."""

    card_id: str = Field(alias="idCarta", min_length=1)
    transaction_id: str = Field(alias="idTransazione")
    store_id: str = Field(default="", alias="idPuntoVendita")
    timestamp: Optional[datetime] = Field(default=None, alias="timestamp")
    kind: EventKind = Field(default=EventKind.OTHER, alias="tipoEvento")
    details: Optional[EventDetails] = Field(default=None, alias="dettagli")

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v: object) -> EventKind:
        return EventKind.from_wire(v)

    @property
    def contributes_to_spend(self) -> bool:
        return self.kind is EventKind.PURCHASE and self.details is not None and bool(self.card_id)


class RewardEvent(BaseModel):
    """Published when a customer crosses the spend threshold and earns a coupon."""

    model_config = ConfigDict(populate_by_name=True)

    card_id: str = Field(alias="idCarta")
    coupon_code: str = Field(alias="codiceCoupon")
    description: str = Field(default="", alias="descrizione")
    expires_at: datetime = Field(alias="dataScadenza")
    timestamp: datetime = Field(default_factory=_utcnow, alias="timestamp")


class FraudAlertEvent(BaseModel):
    """Published when a card shows suspicious transaction frequency."""

    model_config = ConfigDict(populate_by_name=True)

    card_id: str = Field(alias="idCarta")
    suspicious_transaction_id: str = Field(alias="idTransazioneSospetta")
    alarm_kind: str = Field(default="Unknown", alias="tipoAllarme")
    message: str = Field(default="", alias="messaggio")
    severity: AlertSeverity = Field(default=AlertSeverity.WARNING, alias="severita")
    raised_at: datetime = Field(default_factory=_utcnow, alias="timestampAllarme")


def parse_event(raw: Union[bytes, str, None]) -> LoyaltyEvent:
    """
    Decode a Kafka message value into a ``LoyaltyEvent``.

    Amounts are parsed as ``Decimal`` straight from the JSON text so that the
    stored ``transactionId:amount`` member is stable across redeliveries.

    Raises:
        MalformedEventError: for empty values, undecodable bytes, invalid JSON,
            a non-object payload or missing/invalid required fields.
    """
    if raw is None or len(raw) == 0:
        raise MalformedEventError("Empty message value")
    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        data = json.loads(text, parse_float=Decimal)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedEventError(f"Invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise MalformedEventError(f"Expected a JSON object, got {type(data).__name__}")
    try:
        return LoyaltyEvent.model_validate(data)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid loyalty event: {e.error_count()} validation error(s): {e}") from e


def encode_event(event: BaseModel) -> bytes:
    """Serialize an outbound event with its wire field names."""
    return event.model_dump_json(by_alias=True).encode("utf-8")


__all__ = [
    "AlertSeverity",
    "EventDetails",
    "EventKind",
    "FraudAlertEvent",
    "LoyaltyEvent",
    "RewardEvent",
    "encode_event",
    "parse_event",
]
