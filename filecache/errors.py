"""
Error hierarchy for the file address cache.
"""

from __future__ import annotations

from typing import Optional


class FileCacheError(RuntimeError):
    """Base error for the file address cache."""


class RecordStoreError(FileCacheError):
    """A read or write against the record store failed."""


class EligibilityQueryError(FileCacheError):
    """Listing eligible resources failed; the whole invocation is aborted."""


class ClaimWriteError(FileCacheError):
    """Could not mark a resource PENDING. The resource is skipped this run."""

    def __init__(self, resource_uri: str, message: str) -> None:
        super().__init__(f"{resource_uri}: {message}")
        self.resource_uri = resource_uri


class PersistError(FileCacheError):
    """Artifact metadata could not be recorded after a successful download."""

    def __init__(self, resource_uri: str, message: str) -> None:
        super().__init__(f"{resource_uri}: {message}")
        self.resource_uri = resource_uri


class StorageWriteError(FileCacheError):
    """Writing downloaded bytes to local storage failed."""

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path
