"""Main application entry point."""

import asyncio
import logging
import signal

from prometheus_client import start_http_server

from marketscan.config import settings
from marketscan.db.session import init_models
from marketscan.engine import ScrapingEngine
from marketscan.logging_config import setup_logging
from marketscan.worker.scheduler import setup_scheduler

logger = logging.getLogger(__name__)


async def serve():
    """Run the engine and scheduler until SIGINT or SIGTERM."""
    logger.info("Starting marketscan...")

    await init_models()

    engine = ScrapingEngine()
    await engine.start()

    scheduler = setup_scheduler(engine)
    scheduler.start()
    logger.info("Scheduler started")

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Prometheus metrics on port {settings.metrics_port}")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    await stop.wait()

    logger.info("Shutting down...")
    scheduler.shutdown(wait=False)
    await engine.stop()
    logger.info("Shutdown complete")


def run():
    setup_logging(level=settings.log_level)
    asyncio.run(serve())


if __name__ == "__main__":
    run()
