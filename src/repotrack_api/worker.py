"""Refresh worker without the HTTP server.

    repotrack-worker            # installed console script
    python -m repotrack_api.worker

Point every process at the same ``REPOTRACK_QUEUE_URL`` (Redis) to spread
refreshes over several machines. SIGINT and SIGTERM stop the worker; jobs
still running are left to stall recovery on another worker.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from repotrack_api.config import settings
from repotrack_api.dependencies import get_job_worker, shutdown_dependencies
from repotrack_api.observability import configure_logging
from repotrack_api.storage.db import get_db, reset_db

logger = logging.getLogger(__name__)


def _stop_on_signals(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def request_stop(sig: signal.Signals) -> None:
        logger.info("%s received, stopping", sig.name)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop, sig)


async def run_worker() -> None:
    await get_db()
    job_worker = await get_job_worker()

    stop = asyncio.Event()
    _stop_on_signals(stop)

    job_worker.start()
    logger.info(
        "Worker %s polling %s (concurrency=%d, poll every %.1fs)",
        job_worker.worker_id,
        settings.queue_url,
        settings.worker_concurrency,
        settings.worker_poll_interval_seconds,
    )
    try:
        await stop.wait()
    finally:
        await shutdown_dependencies()
        await reset_db()
        logger.info("Worker %s stopped", job_worker.worker_id)


def main() -> None:
    configure_logging(settings)
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
