from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from ..protocol import encode_data
from .inbound import recent_readings
from .outbound import QueuedMessageId, enqueue_message


logger = logging.getLogger("relay.aggregator")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def aggregate_recent(
    session: Session,
    *,
    sample_size: int,
    now: datetime | None = None,
) -> QueuedMessageId | None:
    """Average the newest `sample_size` readings and queue the result for every client.

    Returns the queued message id, or None when nothing has been received yet.
    """

    readings = recent_readings(session, sample_size)
    if not readings:
        logger.info("no readings to aggregate")
        return None

    now = now or utcnow()
    average = sum(r.value for r in readings) / len(readings)
    payload = encode_data(now, average)
    queued_id = enqueue_message(session, payload, now)
    logger.info(
        "aggregate queued",
        extra={"fields": {"queued_message_id": queued_id, "samples": len(readings), "average": average}},
    )
    return queued_id
