from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from common.errors import ConfigurationError
from common.events import AlertSeverity


class KafkaConfig(BaseModel):
    bootstrap_servers: str = Field(min_length=1)
    group_id: str = Field(min_length=1)
    input_topic: str = Field(min_length=1)
    # Malformed messages are forwarded here before being committed, when set.
    dead_letter_topic: Optional[str] = Field(default=None)

    @field_validator("dead_letter_topic", mode="before")
    @classmethod
    def _blank_is_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def consumer_settings(self) -> dict:
        # Offsets are committed by the worker only after a message is settled.
        return {
            "bootstrap.servers": self.bootstrap_servers,
            "group.id": self.group_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
        }

    def producer_settings(self) -> dict:
        return {
            "bootstrap.servers": self.bootstrap_servers,
            "acks": "all",
            "enable.idempotence": True,
        }


class RedisConfig(BaseModel):
    host: str = Field(default="localhost")
    port: int = Field(default=6379, ge=1, le=65535)
    password: Optional[str] = Field(default=None)
    db: int = Field(default=0, ge=0)
    socket_timeout_seconds: float = Field(default=5.0, gt=0)


class WorkerConfig(BaseModel):
    poll_timeout_seconds: float = Field(default=1.0, gt=0)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    drain_timeout_seconds: float = Field(default=5.0, ge=0)
    publish_timeout_seconds: float = Field(default=10.0, gt=0)
    metrics_port: Optional[int] = Field(default=None, ge=1, le=65535)


class RewardRuleConfig(BaseModel):
    """
    Spend-threshold reward rule.

    A coupon is issued the first time a customer's cumulative purchases over
    the last ``window_days`` days reach ``spend_threshold``.
    """

    output_topic: str = Field(min_length=1)
    spend_threshold: Decimal = Field(gt=0)
    window_days: int = Field(ge=1)
    coupon_prefix: str = Field(default="WELCOME20", min_length=1)
    description: str = Field(default="20% off your next purchase")
    validity_days: int = Field(default=30, ge=1)


class FraudRuleConfig(BaseModel):
    """
    High-frequency transaction rule.

    A card is flagged when it registers more than ``max_transactions`` events
    inside a fixed window of ``window_seconds`` seconds.
    """

    output_topic: str = Field(min_length=1)
    max_transactions: int = Field(ge=1)
    window_seconds: int = Field(ge=1)
    alarm_kind: str = Field(default="HighFrequencyTransaction", min_length=1)
    severity: AlertSeverity = Field(default=AlertSeverity.CRITICAL)

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, v: object) -> object:
        if isinstance(v, str):
            for severity in AlertSeverity:
                if severity.value.lower() == v.strip().lower():
                    return severity
        return v


class RewardEngineConfig(BaseModel):
    kafka: KafkaConfig
    redis: RedisConfig = Field(default_factory=RedisConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    rule: RewardRuleConfig


class FraudDetectorConfig(BaseModel):
    kafka: KafkaConfig
    redis: RedisConfig = Field(default_factory=RedisConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    rule: FraudRuleConfig


def _load_env(env_file: Optional[str]) -> None:
    # Load env file if present; do not override explicit process environment.
    if env_file:
        load_dotenv(env_file, override=False)
        return

    cwd = Path.cwd()
    for base in (cwd, *cwd.parents):
        candidate = base / ".env"
        if candidate.exists():
            load_dotenv(candidate, override=False)
            return


def _from_env(prefix: str, key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(f"{prefix}{key}")
    if value is None or not value.strip():
        return default
    return value.strip()


class _Required:
    """Collects every missing required variable so they are reported together."""

    def __init__(self) -> None:
        self.missing: List[str] = []

    def __call__(self, prefix: str, key: str) -> str:
        value = _from_env(prefix, key)
        if value is None:
            self.missing.append(f"{prefix}{key}")
            return ""
        return value

    def check(self, worker: str) -> None:
        if self.missing:
            raise ConfigurationError(
                f"Missing required settings for {worker}: {', '.join(self.missing)}"
            )


def _int(prefix: str, key: str, raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{prefix}{key} must be an integer, got {raw!r}") from e


def _float(prefix: str, key: str, raw: Optional[str]) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{prefix}{key} must be a number, got {raw!r}") from e


def _decimal(prefix: str, key: str, raw: Optional[str]) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    try:
        return Decimal(raw)
    except InvalidOperation as e:
        raise ConfigurationError(f"{prefix}{key} must be a decimal, got {raw!r}") from e


def load_kafka_config(required: Optional[_Required] = None, env_file: Optional[str] = None) -> KafkaConfig:
    """
    Read the ``KAFKA_*`` section.

    When ``required`` is given, missing values are recorded there instead of
    failing immediately, so a worker can report all of its gaps at once.
    """
    own = required is None
    if own:
        _load_env(env_file)
    required = required or _Required()
    values = dict(
        bootstrap_servers=required("KAFKA_", "BOOTSTRAP_SERVERS"),
        group_id=required("KAFKA_", "GROUP_ID"),
        input_topic=required("KAFKA_", "INPUT_TOPIC"),
        dead_letter_topic=_from_env("KAFKA_", "DEAD_LETTER_TOPIC"),
    )
    if own:
        required.check("kafka")
    if required.missing:
        return KafkaConfig.model_construct(**values)
    return _validated(KafkaConfig, values)


def _load_redis() -> RedisConfig:
    return _validated(
        RedisConfig,
        dict(
            host=_from_env("REDIS_", "HOST", "localhost"),
            port=_int("REDIS_", "PORT", _from_env("REDIS_", "PORT", "6379")),
            password=_from_env("REDIS_", "PASSWORD"),
            db=_int("REDIS_", "DB", _from_env("REDIS_", "DB", "0")),
            socket_timeout_seconds=_float(
                "REDIS_", "SOCKET_TIMEOUT_SECONDS", _from_env("REDIS_", "SOCKET_TIMEOUT_SECONDS", "5")
            ),
        ),
    )


def _load_worker() -> WorkerConfig:
    return _validated(
        WorkerConfig,
        dict(
            poll_timeout_seconds=_float(
                "WORKER_", "POLL_TIMEOUT_SECONDS", _from_env("WORKER_", "POLL_TIMEOUT_SECONDS", "1.0")
            ),
            retry_backoff_seconds=_float(
                "WORKER_", "RETRY_BACKOFF_SECONDS", _from_env("WORKER_", "RETRY_BACKOFF_SECONDS", "1.0")
            ),
            drain_timeout_seconds=_float(
                "WORKER_", "DRAIN_TIMEOUT_SECONDS", _from_env("WORKER_", "DRAIN_TIMEOUT_SECONDS", "5.0")
            ),
            publish_timeout_seconds=_float(
                "WORKER_", "PUBLISH_TIMEOUT_SECONDS", _from_env("WORKER_", "PUBLISH_TIMEOUT_SECONDS", "10.0")
            ),
            metrics_port=_int("", "METRICS_PORT", _from_env("", "METRICS_PORT")),
        ),
    )


def _validated(model: type, values: dict):
    try:
        return model(**values)
    except ValidationError as e:
        # Surface as a startup failure rather than a generic pydantic error.
        raise ConfigurationError(f"Invalid {model.__name__}: {e}") from e


def load_reward_engine_config(env_file: Optional[str] = None) -> RewardEngineConfig:
    """
    Load the reward (coupon) engine settings from the environment.

    Required: KAFKA_BOOTSTRAP_SERVERS, KAFKA_GROUP_ID, KAFKA_INPUT_TOPIC,
    KAFKA_REWARD_TOPIC, REWARD_SPEND_THRESHOLD, REWARD_WINDOW_DAYS.
    """
    _load_env(env_file)
    required = _Required()
    kafka = load_kafka_config(required)
    output_topic = required("KAFKA_", "REWARD_TOPIC")
    threshold = required("REWARD_", "SPEND_THRESHOLD")
    window_days = required("REWARD_", "WINDOW_DAYS")
    required.check("reward-engine")

    rule = _validated(
        RewardRuleConfig,
        dict(
            output_topic=output_topic,
            spend_threshold=_decimal("REWARD_", "SPEND_THRESHOLD", threshold),
            window_days=_int("REWARD_", "WINDOW_DAYS", window_days),
            coupon_prefix=_from_env("REWARD_", "COUPON_PREFIX", "WELCOME20"),
            description=_from_env("REWARD_", "DESCRIPTION", "20% off your next purchase"),
            validity_days=_int("REWARD_", "VALIDITY_DAYS", _from_env("REWARD_", "VALIDITY_DAYS", "30")),
        ),
    )
    return RewardEngineConfig(kafka=kafka, redis=_load_redis(), worker=_load_worker(), rule=rule)


def load_fraud_detector_config(env_file: Optional[str] = None) -> FraudDetectorConfig:
    """
    Load the fraud detector settings from the environment.

    Required: KAFKA_BOOTSTRAP_SERVERS, KAFKA_GROUP_ID, KAFKA_INPUT_TOPIC,
    KAFKA_FRAUD_ALERT_TOPIC, FRAUD_MAX_TRANSACTIONS, FRAUD_WINDOW_SECONDS.
    """
    _load_env(env_file)
    required = _Required()
    kafka = load_kafka_config(required)
    output_topic = required("KAFKA_", "FRAUD_ALERT_TOPIC")
    max_transactions = required("FRAUD_", "MAX_TRANSACTIONS")
    window_seconds = required("FRAUD_", "WINDOW_SECONDS")
    required.check("fraud-detector")

    rule = _validated(
        FraudRuleConfig,
        dict(
            output_topic=output_topic,
            max_transactions=_int("FRAUD_", "MAX_TRANSACTIONS", max_transactions),
            window_seconds=_int("FRAUD_", "WINDOW_SECONDS", window_seconds),
            alarm_kind=_from_env("FRAUD_", "ALARM_KIND", "HighFrequencyTransaction"),
            severity=_from_env("FRAUD_", "ALERT_SEVERITY", "Critical"),
        ),
    )
    return FraudDetectorConfig(kafka=kafka, redis=_load_redis(), worker=_load_worker(), rule=rule)


__all__ = [
    "FraudDetectorConfig",
    "FraudRuleConfig",
    "KafkaConfig",
    "RedisConfig",
    "RewardEngineConfig",
    "RewardRuleConfig",
    "WorkerConfig",
    "load_fraud_detector_config",
    "load_kafka_config",
    "load_reward_engine_config",
]
