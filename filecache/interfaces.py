"""
Core interfaces for the file address cache.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional

from .models import CacheLabel, CacheStatus, FetchOutcome, FileArtifact, Resource


class RecordStore(ABC):
    """Abstract record store holding file addresses and their cache status.

    Every ``set_status`` call replaces the previous status of the resource
    as one unit. No isolation is assumed between separate calls.
    """

    @abstractmethod
    async def list_eligible(
        self,
        max_retries: int,
        pending_timeout: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> List[Resource]:
        """Resources that may be fetched in this invocation.

        A resource is eligible when it has no status, is FAILED, or has been
        PENDING for longer than ``pending_timeout``; and in all cases has
        been tried fewer than ``max_retries`` times.
        """
        pass

    @abstractmethod
    async def get_status(self, resource_uri: str) -> Optional[CacheStatus]:
        """Current status of a resource, if any."""
        pass

    @abstractmethod
    async def set_status(
        self,
        resource_uri: str,
        label: CacheLabel,
        http_code: Optional[int] = None,
        times_tried: int = 0,
        initiated_at: Optional[datetime] = None,
    ) -> CacheStatus:
        """Replace the status of a resource."""
        pass

    @abstractmethod
    async def record_artifact(self, resource_uri: str, artifact: FileArtifact) -> str:
        """Persist the metadata of a cached file; returns the file record uri."""
        pass


class Fetcher(ABC):
    """Abstract base class for remote fetchers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this fetcher."""
        pass

    @abstractmethod
    async def fetch(self, url: str) -> FetchOutcome:
        """Fetch ``url`` once and report a classified outcome.

        Implementations must not raise for remote or transport failures.
        """
        pass

    async def close(self) -> None:
        """Release any held connections."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_):
        await self.close()
