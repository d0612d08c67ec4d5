"""Command-line interface for the loyalty signal workers."""

from __future__ import annotations

import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

import click
from pydantic import ValidationError

from common.config import load_fraud_detector_config, load_kafka_config, load_reward_engine_config
from common.errors import ConfigurationError, PublishError
from common.events import EventDetails, EventKind, LoyaltyEvent, encode_event

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
    )


def _startup_error(exc: Exception) -> click.ClickException:
    logger.error("Startup aborted: %s", exc)
    return click.ClickException(str(exc))


def _start_metrics(metrics_port: Optional[int], configured_port: Optional[int]) -> None:
    port = metrics_port or configured_port
    if port:
        from common.metrics import start_metrics_server

        start_metrics_server(port)


@click.group()
def cli() -> None:
    """Loyalty card stream workers: reward issuance and fraud alerting."""
    _configure_logging()


@cli.command("reward-engine")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Optional .env file")
@click.option("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
def reward_engine(env_file: Optional[str], metrics_port: Optional[int]) -> None:
    """Issue coupons when rolling spend crosses the configured threshold."""
    from services.stream_processor.app import build_reward_engine, run_until_signalled

    try:
        cfg = load_reward_engine_config(env_file=env_file)
    except ConfigurationError as e:
        raise _startup_error(e) from e
    _start_metrics(metrics_port, cfg.worker.metrics_port)
    run_until_signalled(build_reward_engine(cfg))


@cli.command("fraud-detector")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Optional .env file")
@click.option("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
def fraud_detector(env_file: Optional[str], metrics_port: Optional[int]) -> None:
    """Raise alerts for cards transacting too often."""
    from services.stream_processor.app import build_fraud_detector, run_until_signalled

    try:
        cfg = load_fraud_detector_config(env_file=env_file)
    except ConfigurationError as e:
        raise _startup_error(e) from e
    _start_metrics(metrics_port, cfg.worker.metrics_port)
    run_until_signalled(build_fraud_detector(cfg))


@cli.command("produce-event")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Optional .env file")
@click.option("--card-id", required=True, help="Loyalty card id (message key)")
@click.option("--transaction-id", default=None, help="Defaults to a random UUID")
@click.option("--store-id", default="", help="Point of sale id")
@click.option("--kind", default=EventKind.PURCHASE.value, show_default=True, help="tipoEvento value")
@click.option("--amount", type=str, default=None, help="Purchase amount (decimal)")
@click.option("--points", type=int, default=0, show_default=True)
def produce_event(
    env_file: Optional[str],
    card_id: str,
    transaction_id: Optional[str],
    store_id: str,
    kind: str,
    amount: Optional[str],
    points: int,
) -> None:
    """Publish one loyalty event to the input topic (local testing)."""
    from services.kafka.producer import build_emitter

    try:
        kafka = load_kafka_config(env_file=env_file)
    except ConfigurationError as e:
        raise _startup_error(e) from e

    details = None
    if amount is not None:
        try:
            details = EventDetails(amount=Decimal(amount), points=points)
        except (InvalidOperation, ValidationError) as e:
            raise click.BadParameter(f"{amount!r} is not a finite decimal", param_hint="--amount") from e
    event = LoyaltyEvent(
        card_id=card_id,
        transaction_id=transaction_id or str(uuid.uuid4()),
        store_id=store_id,
        timestamp=datetime.now(timezone.utc),
        kind=kind,
        details=details,
    )
    emitter = build_emitter(kafka)
    try:
        ack = emitter.publish(kafka.input_topic, key=card_id, payload=encode_event(event))
    except PublishError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Published {event.transaction_id} to {ack.topic} [{ack.partition}] @ {ack.offset}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
