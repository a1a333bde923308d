"""
Main entry point: trigger server plus recurring caching runs.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from aiohttp import web

from filecache.config import Settings, load_config
from filecache.errors import EligibilityQueryError
from filecache.infra.scheduler import Scheduler
from filecache.server import create_app
from filecache.service import CacheService


LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


async def main_with_scheduler(settings: Settings, enable_scheduler: bool = True) -> None:
    """Serve the trigger endpoints and run the caching job on its schedule."""
    logger = logging.getLogger(__name__)
    logger.info("Starting file address cache...")
    logger.info(
        f"storage={settings.storage_root} db={settings.db_path} "
        f"max_retries={settings.max_retries} pending_timeout={settings.pending_timeout}"
    )

    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    scheduler: Optional[Scheduler] = None
    runner: Optional[web.AppRunner] = None

    async with CacheService(settings) as service:
        try:
            runner = web.AppRunner(create_app(service.orchestrator))
            await runner.setup()
            site = web.TCPSite(runner, settings.host, settings.port)
            await site.start()
            logger.info(f"Trigger endpoint listening on {settings.host}:{settings.port}")

            if enable_scheduler:
                scheduler = Scheduler()
                service.schedule(scheduler)
                await scheduler.start()

            await stop_event.wait()

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
        finally:
            logger.info("Shutting down...")
            if scheduler:
                await scheduler.stop()
            if runner:
                await runner.cleanup()
            logger.info("Shutdown complete")


async def run_once(settings: Settings) -> int:
    """Run a single caching invocation; returns a process exit code."""
    logger = logging.getLogger(__name__)
    async with CacheService(settings) as service:
        try:
            summary = await service.orchestrator.run()
        except EligibilityQueryError as exc:
            logger.error(f"Caching run aborted: {exc}")
            return 1
    logger.info(f"Run finished: {summary.eligible} eligible, {summary.results}")
    return 0


def run_cache_service(config_path: Optional[str] = None) -> None:
    """Entry point that can be called from other scripts."""
    setup_logging()
    settings = load_config(config_path)
    asyncio.run(main_with_scheduler(settings))


if __name__ == "__main__":
    run_cache_service(sys.argv[1] if len(sys.argv) > 1 else None)
