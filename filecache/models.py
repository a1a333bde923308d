"""
Core data models for the file address cache.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class CacheLabel(str, Enum):
    """Label of the single status attached to a file address.

    PENDING : is being downloaded
    FAILED  : last download has failed
    CACHED  : has been successfully cached
    DEAD    : has been tried for the maximum allowed times
    """
    PENDING = "pending"
    FAILED = "failed"
    CACHED = "cached"
    DEAD = "dead"

    @property
    def is_terminal(self) -> bool:
        return self in (CacheLabel.CACHED, CacheLabel.DEAD)


class Resource(BaseModel):
    """A remote file address tracked by the record store."""
    uri: str
    url: str
    times_tried: int = Field(default=0, ge=0)
    status: Optional[CacheLabel] = None
    initiated_at: Optional[datetime] = None


class CacheStatus(BaseModel):
    """Most recent cache status of a resource."""
    uri: str
    resource_uri: str
    label: CacheLabel
    http_status_code: Optional[int] = None
    times_tried: int = Field(default=0, ge=0)
    initiated_at: datetime = Field(default_factory=utcnow)
    uuid: str


class DownloadedFile(BaseModel):
    """Bytes written to local storage by one successful fetch."""
    path: Path
    name: str
    size: int
    content_type: str
    extension: str
    completed_at: datetime = Field(default_factory=utcnow)


class FileArtifact(BaseModel):
    """Metadata persisted for a cached file."""
    name: str
    content_type: str
    size: int
    extension: str
    created_at: datetime

    @classmethod
    def from_download(cls, downloaded: DownloadedFile) -> "FileArtifact":
        return cls(
            name=downloaded.name,
            content_type=downloaded.content_type,
            size=downloaded.size,
            extension=downloaded.extension,
            created_at=downloaded.completed_at,
        )


# --------------------------------------------------------------------------- #
# Fetch outcomes. Only ever live for one pipeline run.

class FetchSuccess(BaseModel):
    file: DownloadedFile
    http_code: int = 200


class RemoteFailure(BaseModel):
    http_code: int


class TransportFailure(BaseModel):
    cause: str


FetchOutcome = Union[FetchSuccess, RemoteFailure, TransportFailure]
