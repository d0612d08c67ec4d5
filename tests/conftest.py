"""Shared fakes: a replaying Kafka consumer, a recording emitter and a manual clock."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from common.config import WorkerConfig
from common.errors import PublishError
from services.kafka.producer import DeliveryAck
from services.state_store.store import InMemoryStateStore

INPUT_TOPIC = "attivita-carte-fedelta"


class FakeClock:
    def __init__(self, start: float = 1_760_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeKafkaError:
    def __init__(self, code: int, fatal: bool = False, reason: str = "broker error") -> None:
        self._code = code
        self._fatal = fatal
        self._reason = reason

    def code(self) -> int:
        return self._code

    def fatal(self) -> bool:
        return self._fatal

    def __str__(self) -> str:
        return self._reason


class FakeMessage:
    def __init__(
        self,
        value: Optional[bytes],
        key: Optional[bytes] = None,
        offset: int = 0,
        topic: str = INPUT_TOPIC,
        partition: int = 0,
        error: Optional[FakeKafkaError] = None,
    ) -> None:
        self._value = value
        self._key = key
        self._offset = offset
        self._topic = topic
        self._partition = partition
        self._error = error

    def value(self) -> Optional[bytes]:
        return self._value

    def key(self) -> Optional[bytes]:
        return self._key

    def offset(self) -> int:
        return self._offset

    def topic(self) -> str:
        return self._topic

    def partition(self) -> int:
        return self._partition

    def error(self) -> Optional[FakeKafkaError]:
        return self._error


class FakeConsumer:
    """
    Replays ``messages`` in order. ``seek`` moves back to the message with the
    requested offset, like a real partition rewind. ``on_exhausted`` is called
    once every message has been handed out (tests use it to stop the loop).
    """

    def __init__(self, messages: List[FakeMessage]) -> None:
        self._messages = list(messages)
        self._pos = 0
        self.subscribed: List[str] = []
        self.committed: List[int] = []
        self.seeks: List[int] = []
        self.closed = False
        self.commit_failures = 0
        self.on_exhausted: Optional[Callable[[], None]] = None

    def subscribe(self, topics: List[str]) -> None:
        self.subscribed = list(topics)

    def poll(self, timeout: float = 1.0) -> Optional[FakeMessage]:
        if self._pos < len(self._messages):
            msg = self._messages[self._pos]
            self._pos += 1
            return msg
        if self.on_exhausted is not None:
            self.on_exhausted()
        return None

    def commit(self, message: FakeMessage, asynchronous: bool = True) -> None:
        if self.commit_failures > 0:
            from confluent_kafka import KafkaException

            self.commit_failures -= 1
            raise KafkaException("commit rejected: coordinator not available")
        self.committed.append(message.offset())

    def seek(self, partition: Any) -> None:
        self.seeks.append(partition.offset)
        for index, msg in enumerate(self._messages):
            if msg.offset() == partition.offset:
                self._pos = index
                return

    def close(self) -> None:
        self.closed = True


class RecordingEmitter:
    def __init__(self, fail_times: int = 0) -> None:
        self.published: List[Dict[str, Any]] = []
        self.flushes: List[float] = []
        self.fail_times = fail_times

    def publish(self, topic: str, key: Any, payload: Any) -> DeliveryAck:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise PublishError(f"Delivery to topic {topic} failed: broker unavailable")
        self.published.append({"topic": topic, "key": key, "payload": payload})
        return DeliveryAck(topic=topic, partition=0, offset=len(self.published) - 1)

    def flush(self, timeout_sec: float = 5.0) -> int:
        self.flushes.append(timeout_sec)
        return 0


def wire_event(
    card_id: str = "CARD-001",
    transaction_id: str = "TX-1",
    kind: str = "Acquisto",
    amount: Optional[str] = "10.00",
    points: int = 0,
    store_id: str = "STORE-9",
) -> bytes:
    """Inbound JSON as the ingestion API publishes it (amount kept as a JSON number)."""
    details = "null" if amount is None else f'{{"importo": {amount}, "punti": {points}}}'
    return (
        "{"
        f'"idCarta": {json.dumps(card_id)}, '
        f'"idTransazione": {json.dumps(transaction_id)}, '
        f'"idPuntoVendita": {json.dumps(store_id)}, '
        '"timestamp": "2025-10-01T10:00:00Z", '
        f'"tipoEvento": {json.dumps(kind)}, '
        f'"dettagli": {details}'
        "}"
    ).encode("utf-8")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStateStore:
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def fast_worker() -> WorkerConfig:
    return WorkerConfig(
        poll_timeout_seconds=0.01,
        retry_backoff_seconds=0,
        drain_timeout_seconds=0.5,
        publish_timeout_seconds=1.0,
    )


@pytest.fixture
def make_messages() -> Callable[..., List[FakeMessage]]:
    def _make(*values: Optional[bytes], key: Optional[bytes] = b"CARD-001") -> List[FakeMessage]:
        return [FakeMessage(value=v, key=key, offset=i) for i, v in enumerate(values)]

    return _make


@pytest.fixture
def event_bytes() -> Callable[..., bytes]:
    return wire_event


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def consumer_for() -> Callable[[List[FakeMessage]], FakeConsumer]:
    return FakeConsumer


@pytest.fixture
def kafka_message() -> type:
    return FakeMessage


@pytest.fixture
def kafka_error() -> type:
    return FakeKafkaError
