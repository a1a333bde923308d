"""
Wires store, storage, fetcher and orchestrator together from settings.
"""

from __future__ import annotations

import logging

from .config import Settings
from .errors import EligibilityQueryError
from .fetcher import HttpFetcher
from .infra.db import Database
from .infra.http import HttpClient
from .infra.scheduler import Scheduler
from .infra.storage import LocalStorage
from .orchestrator import FetchOrchestrator
from .store import SqliteRecordStore

logger = logging.getLogger(__name__)


class CacheService:
    """Owns the long-lived resources of one process."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.db = Database(settings.db_path)
        self.store = SqliteRecordStore(
            self.db,
            status_base_uri=settings.status_base_uri,
            file_base_uri=settings.file_base_uri,
        )
        self.storage = LocalStorage(settings.storage_root)
        self.http = HttpClient(
            timeout=settings.request_timeout,
            default_headers={"User-Agent": settings.user_agent},
        )
        self.fetcher = HttpFetcher(
            self.storage,
            http=self.http,
            default_content_type=settings.default_content_type,
            default_extension=settings.default_extension,
        )
        self.orchestrator = FetchOrchestrator(
            self.store,
            self.fetcher,
            self.storage,
            max_retries=settings.max_retries,
            pending_timeout=settings.pending_timeout,
            max_concurrency=settings.max_concurrency,
        )

    async def start(self) -> None:
        await self.db.connect()
        self.settings.storage_root.mkdir(parents=True, exist_ok=True)

    async def close(self) -> None:
        await self.fetcher.close()
        await self.db.close()

    async def __aenter__(self) -> "CacheService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------- #
    async def scheduled_run(self) -> None:
        """Job body for the scheduler; a failed run must not kill the job."""
        logger.info("File address cache triggered by scheduler")
        try:
            await self.orchestrator.run()
        except EligibilityQueryError as exc:
            logger.error(f"Scheduled caching run aborted: {exc}")

    def schedule(self, scheduler: Scheduler) -> None:
        """Register the recurring run: cron if configured, else interval."""
        scheduler.add_job(
            self.scheduled_run,
            "file-address-cache",
            interval_seconds=self.settings.interval_seconds,
            cron_expression=self.settings.cron,
        )
