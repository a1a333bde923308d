"""Shared test fixtures: temp SQLite store, temp storage, scripted fetcher.

No network access; remote hosts are aiohttp test servers on localhost.
"""

from __future__ import annotations

from collections import defaultdict, deque
from pathlib import Path
from typing import Deque, Dict, List, Union

import pytest
import pytest_asyncio

from filecache.infra.db import Database
from filecache.infra.storage import LocalStorage
from filecache.interfaces import Fetcher
from filecache.models import (
    DownloadedFile,
    FetchOutcome,
    FetchSuccess,
    RemoteFailure,
    TransportFailure,
)
from filecache.store import SqliteRecordStore


class ScriptedFetcher(Fetcher):
    """Returns queued outcomes per URL; ``"ok:<content-type>"`` writes a file."""

    name = "ScriptedFetcher"

    def __init__(self, storage: LocalStorage) -> None:
        self.storage = storage
        self.script: Dict[str, Deque[Union[str, int, Exception]]] = defaultdict(deque)
        self.calls: List[str] = []

    def queue(self, url: str, *steps: Union[str, int, Exception]) -> None:
        self.script[url].extend(steps)

    async def fetch(self, url: str) -> FetchOutcome:
        self.calls.append(url)
        step = self.script[url].popleft()
        if isinstance(step, Exception):
            raise step
        if isinstance(step, int):
            return RemoteFailure(http_code=step)
        if step == "timeout":
            return TransportFailure(cause="TimeoutError: timed out")

        content_type = step.split(":", 1)[1]
        extension = content_type.rsplit("/", 1)[1]
        name = self.storage.new_name(extension)

        async def body():
            yield b"\x89PNG fake body"

        size = await self.storage.write_stream(name, body())
        return FetchSuccess(
            file=DownloadedFile(
                path=self.storage.path_for(name),
                name=name,
                size=size,
                content_type=content_type,
                extension=extension,
            ),
            http_code=200,
        )


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(tmp_path / "files")


@pytest_asyncio.fixture
async def store(tmp_path: Path):
    db = Database(str(tmp_path / "cache.db"))
    await db.connect()
    yield SqliteRecordStore(db)
    await db.close()


@pytest.fixture
def fetcher(storage: LocalStorage) -> ScriptedFetcher:
    return ScriptedFetcher(storage)
