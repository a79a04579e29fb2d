"""
Worker entry point.
Run with: python -m quotedesk.worker.runner
"""

import structlog
from redis import Redis
from rq import Worker

from quotedesk.config import settings
from quotedesk.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def main():
    """Start the RQ worker."""
    setup_logging("worker")

    conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker(
        queues=[settings.QUEUE_NAME],
        connection=conn,
        name=f"quote-worker-{settings.APP_VERSION}",
    )

    logger.info("worker_starting", queue=settings.QUEUE_NAME, worker=worker.name)
    worker.work(with_scheduler=False)


if __name__ == "__main__":
    main()
