from __future__ import annotations

import logging

from ..config import settings
from ..db import engine, db_session
from ..migrations import maybe_run_startup_migrations
from ..observability import configure_logging
from ..services.aggregator import aggregate_recent


logger = logging.getLogger("relay.job.aggregate")


def main() -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)

    # For job runners, it's convenient to ensure schema exists.
    maybe_run_startup_migrations(engine=engine)

    with db_session() as session:
        queued_id = aggregate_recent(session, sample_size=settings.aggregate_sample_size)

    logger.info("aggregate complete (queued_message_id=%s)", queued_id)


if __name__ == "__main__":
    main()
