"""
Orchestrator for the claim → fetch → persist → status pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field

from .errors import ClaimWriteError, EligibilityQueryError, PersistError
from .infra.storage import LocalStorage
from .interfaces import Fetcher, RecordStore
from .models import (
    FetchOutcome,
    FetchSuccess,
    FileArtifact,
    Resource,
    TransportFailure,
    utcnow,
)
from .retry_state import RetryStateMachine, Transition


logger = logging.getLogger(__name__)


class PipelineResult(str, Enum):
    """How one resource's pipeline ended."""
    CACHED = "cached"
    FAILED = "failed"
    DEAD = "dead"
    PERSIST_FAILED = "persist_failed"
    SKIPPED = "skipped"
    ERROR = "error"


class RunSummary(BaseModel):
    """Counts of pipeline results for one invocation."""
    eligible: int = 0
    results: Dict[PipelineResult, int] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def count(self, result: PipelineResult) -> int:
        return self.results.get(result, 0)


class FetchOrchestrator:
    """Runs one independent pipeline per eligible resource, concurrently."""

    def __init__(
        self,
        store: RecordStore,
        fetcher: Fetcher,
        storage: LocalStorage,
        *,
        max_retries: int = 3,
        pending_timeout: timedelta = timedelta(minutes=10),
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.storage = storage
        self.state_machine = RetryStateMachine(max_retries)
        self.pending_timeout = pending_timeout
        self._semaphore = (
            asyncio.Semaphore(max_concurrency) if max_concurrency else None
        )

    @property
    def max_retries(self) -> int:
        return self.state_machine.max_retries

    # ------------------------------------------------------------------- #
    async def run(self) -> RunSummary:
        """One invocation. Returns once every pipeline has finished.

        Raises :class:`EligibilityQueryError` when the eligible resources
        cannot be listed; per-resource failures never escape.
        """
        summary = RunSummary()
        try:
            resources = await self.store.list_eligible(
                self.max_retries, self.pending_timeout
            )
        except Exception as exc:
            logger.error(f"Eligibility query failed: {exc}", exc_info=True)
            raise EligibilityQueryError(str(exc)) from exc

        summary.eligible = len(resources)
        logger.info(f"Found {len(resources)} file address(es) to cache")

        tasks = [
            asyncio.create_task(self._guarded(resource), name=f"cache-{resource.uri}")
            for resource in resources
        ]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        counts: Counter = Counter()
        for resource, outcome in zip(resources, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Pipeline for {resource.uri} crashed: {outcome!r}")
                counts[PipelineResult.ERROR] += 1
            else:
                counts[outcome] += 1

        summary.results = dict(counts)
        summary.finished_at = utcnow()
        logger.info(
            "Caching run complete: "
            + ", ".join(f"{k.value}={v}" for k, v in sorted(counts.items(), key=lambda kv: kv[0].value))
        )
        return summary

    async def _guarded(self, resource: Resource) -> PipelineResult:
        if self._semaphore is None:
            return await self.process(resource)
        async with self._semaphore:
            return await self.process(resource)

    # ------------------------------------------------------------------- #
    async def process(self, resource: Resource) -> PipelineResult:
        """Drive a single resource through its pipeline."""
        try:
            await self._claim(resource)
        except ClaimWriteError as exc:
            logger.warning(f"Skipping {resource.uri}: {exc}")
            return PipelineResult.SKIPPED

        try:
            outcome = await self._fetch(resource)

            if isinstance(outcome, FetchSuccess):
                try:
                    await self._persist(resource, outcome)
                except PersistError as exc:
                    logger.error(f"Could not record file for {resource.uri}: {exc}")
                    transition = self.state_machine.after_persist_failure(resource.times_tried)
                    await self._write(resource, transition)
                    return PipelineResult.PERSIST_FAILED

            transition = self.state_machine.after_fetch(resource.times_tried, outcome)
            await self._write(resource, transition)
            return PipelineResult(transition.label.value)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Resource stays PENDING and is reclaimed after the timeout.
            logger.error(f"Pipeline for {resource.uri} failed: {exc}", exc_info=True)
            return PipelineResult.ERROR

    async def _claim(self, resource: Resource) -> None:
        transition = self.state_machine.claim(resource.times_tried)
        try:
            await self._write(resource, transition)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise ClaimWriteError(resource.uri, str(exc)) from exc

    async def _fetch(self, resource: Resource) -> FetchOutcome:
        try:
            return await self.fetcher.fetch(resource.url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Fetcher {self.fetcher.name} raised for {resource.url}: {exc}", exc_info=True)
            return TransportFailure(cause=f"{type(exc).__name__}: {exc}")

    async def _persist(self, resource: Resource, outcome: FetchSuccess) -> None:
        artifact = FileArtifact.from_download(outcome.file)
        try:
            with self.storage.discard_on_error(outcome.file.path):
                await self.store.record_artifact(resource.uri, artifact)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise PersistError(resource.uri, str(exc)) from exc

    async def _write(self, resource: Resource, transition: Transition) -> None:
        await self.store.set_status(
            resource.uri,
            transition.label,
            http_code=transition.http_code,
            times_tried=transition.times_tried,
        )

