"""
Dead-letter replay.

Moves dead-lettered classification jobs back onto the primary queue once the
underlying problem has been fixed. Each replayed job starts a fresh retry
episode (``attempts`` back to zero) but keeps its trace and correlation ids
and its last error.
"""

from __future__ import annotations

import argparse
import json

import structlog

from .broker import Broker, QueueTopology, create_broker
from .config import Settings
from .envelope import parse_dead_letter
from .errors import MalformedMessageError
from .logging_config import configure_logging

log = structlog.get_logger(__name__)


def replay_dead_letters(broker: Broker, topology: QueueTopology, *, limit: int | None = None) -> dict:
    """
    Republish up to ``limit`` dead letters to ``topology.primary``.

    A record that cannot be parsed is returned to the dead-letter queue and
    stops the run, so it is never silently discarded.
    """
    stats = {"replayed": 0, "malformed": 0}
    while limit is None or stats["replayed"] < limit:
        delivery = broker.receive(topology.dlq)
        if delivery is None:
            break
        try:
            record = parse_dead_letter(delivery.body)
        except MalformedMessageError as e:
            broker.nack(delivery, requeue=True)
            stats["malformed"] += 1
            log.error("Unreadable dead letter left in place; stopping", queue=topology.dlq, error=str(e))
            break

        message = record.message.replayed()
        try:
            broker.publish(topology.primary, message.to_wire())
        except Exception:
            broker.nack(delivery, requeue=True)
            raise
        broker.ack(delivery)
        stats["replayed"] += 1
        log.info(
            "Replayed dead letter",
            document_id=message.document_id,
            trace_id=message.trace_id,
            dead_lettered_attempts=record.attempts,
            error=record.error,
        )
    return stats


def main() -> int:
    parser = argparse.ArgumentParser(description="Move dead-lettered jobs back to the primary queue.")
    parser.add_argument(
        "--limit",
        type=int,
        default=0,
        help="Replay at most N dead letters (0 means all).",
    )
    args = parser.parse_args()

    try:
        settings = Settings()
        configure_logging(settings)
    except ValueError as e:
        log.error("Configuration error", error=e)
        return 1

    topology = QueueTopology.for_stage(settings.STAGE_NAME, settings.RETRY_DELAY_SECONDS)
    broker = create_broker(settings, consumer_id=f"{settings.WORKER_ID}-replay", recover=False)
    try:
        broker.declare(topology)
        stats = replay_dead_letters(broker, topology, limit=args.limit or None)
    finally:
        broker.close()
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
