"""
Stream processor: the consume -> evaluate -> publish -> commit loop shared by
the reward engine and the fraud detector.

Delivery is at-least-once. An inbound offset is committed only after the
message is fully settled:

- malformed payloads are logged (and optionally dead-lettered), then committed;
- triggered rules publish their derived event, wait for the ack, run the
  rule's follow-up (e.g. spend reset), then commit;
- any other failure leaves the offset uncommitted, rewinds the consumer to
  the failed message and retries it after a short back-off.

Messages are handled one at a time, so per-card ordering holds as long as
upstream keys every event by card id.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable, Optional

from confluent_kafka import KafkaError, KafkaException, TopicPartition

from common import metrics
from common.config import WorkerConfig
from common.errors import MalformedEventError, TransientInfraError
from common.events import parse_event
from services.kafka.producer import DownstreamEmitter
from services.stream_processor.rules import Rule

logger = logging.getLogger(__name__)

MAX_LOGGED_VALUE_CHARS = 1024


class ProcessorState(str, Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


def _position(msg: Any) -> str:
    return f"{msg.topic()}/{msg.partition()}/{msg.offset()}"


def _truncate(value: Optional[bytes], max_length: int = MAX_LOGGED_VALUE_CHARS) -> str:
    if not value:
        return ""
    text = value.decode("utf-8", errors="replace") if isinstance(value, (bytes, bytearray)) else str(value)
    return text if len(text) <= max_length else text[:max_length] + "...(truncated)"


class StreamProcessor:
    """
    One worker loop bound to one rule.

    ``run`` blocks until ``stop`` is called (from a signal handler or another
    thread) or the consumer reports a fatal error. The stop request is
    observed at the top of the loop and at each poll boundary; the message
    being handled when it arrives is always finished first.

    ``on_stopped`` runs last during drain, after the consumer is closed; the
    worker wiring uses it to close the Redis connection.
    """

    def __init__(
        self,
        consumer: Any,
        emitter: DownstreamEmitter,
        rule: Rule,
        input_topic: str,
        worker: Optional[WorkerConfig] = None,
        dead_letter_topic: Optional[str] = None,
        on_stopped: Optional[Callable[[], None]] = None,
    ) -> None:
        worker = worker or WorkerConfig()
        self._consumer = consumer
        self._emitter = emitter
        self._rule = rule
        self._input_topic = input_topic
        self._dead_letter_topic = dead_letter_topic
        self._on_stopped = on_stopped
        self._poll_timeout = worker.poll_timeout_seconds
        self._retry_backoff = worker.retry_backoff_seconds
        self._drain_timeout = worker.drain_timeout_seconds

        self._stop_event = threading.Event()
        self._state = ProcessorState.STOPPED

    @property
    def state(self) -> ProcessorState:
        return self._state

    @property
    def rule(self) -> Rule:
        return self._rule

    def stop(self) -> None:
        """Request a graceful shutdown; safe to call from any thread."""
        if not self._stop_event.is_set():
            logger.info("Stop requested for %s worker.", self._rule.name)
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        self._consumer.subscribe([self._input_topic])
        self._state = ProcessorState.RUNNING
        logger.info(
            "%s worker listening on topic %s (output topic %s).",
            self._rule.name,
            self._input_topic,
            self._rule.output_topic,
        )
        try:
            while not self._stop_event.is_set():
                msg = self._consumer.poll(timeout=self._poll_timeout)
                if msg is None:
                    continue
                if self._stop_event.is_set():
                    # Left uncommitted; it is redelivered after restart.
                    break
                err = msg.error()
                if err is not None:
                    if err.code() == KafkaError._PARTITION_EOF:
                        continue
                    if err.fatal():
                        raise KafkaException(err)
                    logger.error("Kafka consumer error: %s", err)
                    self._backoff()
                    continue
                self.process_message(msg)
        finally:
            self._drain()

    def process_message(self, msg: Any) -> bool:
        """
        Handle one message end to end. Returns True when its offset was
        committed, False when it was scheduled for redelivery.
        """
        with metrics.track_processing(self._rule.name):
            try:
                self._handle(msg)
                return True
            except TransientInfraError as e:
                logger.warning(
                    "Transient failure in %s worker at %s, will retry: %s",
                    self._rule.name,
                    _position(msg),
                    e,
                )
            except Exception:
                logger.exception("Unexpected error in %s worker at %s, will retry.", self._rule.name, _position(msg))
            metrics.record_message(self._rule.name, "retried")
            self._rewind(msg)
            self._backoff()
            return False

    def _handle(self, msg: Any) -> None:
        try:
            event = parse_event(msg.value())
        except MalformedEventError as e:
            logger.error(
                "Malformed message at %s skipped: %s. Value: %s",
                _position(msg),
                e,
                _truncate(msg.value()),
            )
            if self._dead_letter_topic:
                self._emitter.publish(self._dead_letter_topic, key=msg.key(), payload=msg.value() or b"")
            self._commit(msg)
            metrics.record_message(self._rule.name, "malformed")
            return

        derived = self._rule.evaluate(event)
        if derived is not None:
            ack = self._emitter.publish(self._rule.output_topic, key=event.card_id, payload=derived)
            logger.info(
                "%s event for card %s published to %s [%d] @ %d (source %s).",
                type(derived).__name__,
                event.card_id,
                ack.topic,
                ack.partition,
                ack.offset,
                _position(msg),
            )
            metrics.record_emitted(self._rule.name, self._rule.output_topic)
            self._rule.after_publish(event, derived)

        self._commit(msg)
        metrics.record_message(self._rule.name, "triggered" if derived is not None else "processed")

    # ------------------------------------------------------------------
    # Offsets and lifecycle
    # ------------------------------------------------------------------

    def _commit(self, msg: Any) -> None:
        try:
            self._consumer.commit(message=msg, asynchronous=False)
        except KafkaException as e:
            raise TransientInfraError(f"Offset commit failed at {_position(msg)}: {e}") from e

    def _rewind(self, msg: Any) -> None:
        try:
            self._consumer.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
        except KafkaException as e:
            # Partition no longer assigned: the next owner resumes from the last commit.
            logger.warning("Could not rewind to %s: %s", _position(msg), e)

    def _backoff(self) -> None:
        if self._retry_backoff > 0:
            self._stop_event.wait(self._retry_backoff)

    def _drain(self) -> None:
        self._state = ProcessorState.DRAINING
        logger.info("Draining %s worker (timeout %.1fs)...", self._rule.name, self._drain_timeout)
        try:
            self._emitter.flush(self._drain_timeout)
        except Exception as e:  # pragma: no cover - best-effort shutdown
            logger.warning("Producer flush failed during shutdown: %s", e)
        try:
            self._consumer.close()
        except Exception as e:  # pragma: no cover - best-effort shutdown
            logger.warning("Consumer close failed during shutdown: %s", e)
        if self._on_stopped is not None:
            try:
                self._on_stopped()
            except Exception as e:  # pragma: no cover - best-effort shutdown
                logger.warning("Releasing %s worker resources failed: %s", self._rule.name, e)
        self._state = ProcessorState.STOPPED
        logger.info("%s worker stopped.", self._rule.name)


__all__ = ["ProcessorState", "StreamProcessor"]
