"""
HTTP fetcher – downloads one file address into local storage and reports
a classified :data:`~filecache.models.FetchOutcome`.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
from typing import Optional, Tuple

import aiohttp

from .errors import StorageWriteError
from .infra.http import HttpClient
from .infra.storage import LocalStorage
from .interfaces import Fetcher
from .models import (
    DownloadedFile,
    FetchOutcome,
    FetchSuccess,
    RemoteFailure,
    TransportFailure,
    utcnow,
)

logger = logging.getLogger(__name__)

__all__ = ["HttpFetcher", "infer_type"]


# --------------------------------------------------------------------------- #
CHUNK_SIZE = 64 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_EXTENSION = "bin"

_MEDIA_TYPE = re.compile(r"^[\w.+-]+/[\w.+-]+$")
# Built-in table only; host mime.types files are not read.
_MIME = mimetypes.MimeTypes(filenames=())


def infer_type(
    header: Optional[str],
    *,
    default_content_type: str = DEFAULT_CONTENT_TYPE,
    default_extension: str = DEFAULT_EXTENSION,
) -> Tuple[str, str]:
    """Return ``(content_type, extension)`` for a Content-Type header value.

    Missing or malformed header -> both defaults. Well-formed but unknown
    type -> the header's type with the default extension.
    """
    if not header:
        return default_content_type, default_extension

    media_type = header.split(";", 1)[0].strip().lower()
    if not _MEDIA_TYPE.match(media_type):
        return default_content_type, default_extension

    extension = _MIME.guess_extension(media_type)
    if not extension:
        return media_type, default_extension
    return media_type, extension.lstrip(".")


# --------------------------------------------------------------------------- #
class HttpFetcher(Fetcher):
    """Fetches a URL with a single GET and streams 2xx bodies to disk."""

    name = "HttpFetcher"

    def __init__(
        self,
        storage: LocalStorage,
        *,
        http: Optional[HttpClient] = None,
        default_content_type: str = DEFAULT_CONTENT_TYPE,
        default_extension: str = DEFAULT_EXTENSION,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self._storage = storage
        self._http = http or HttpClient()
        self._default_content_type = default_content_type
        self._default_extension = default_extension
        self._chunk_size = chunk_size

    async def close(self) -> None:
        await self._http.close()

    # ------------------------------------------------------------------- #
    async def fetch(self, url: str) -> FetchOutcome:
        try:
            async with self._http.stream("GET", url) as resp:
                if not 200 <= resp.status < 300:
                    logger.warning(f"GET {url} answered {resp.status}")
                    return RemoteFailure(http_code=resp.status)
                return await self._save(url, resp)
        except aiohttp.TooManyRedirects as exc:
            # the last hop is still a 3xx the client gave up on
            if exc.history:
                code = exc.history[-1].status
                logger.warning(f"GET {url} stopped after {len(exc.history)} redirects ({code})")
                return RemoteFailure(http_code=code)
            return TransportFailure(cause=f"{type(exc).__name__}: {exc}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            cause = f"{type(exc).__name__}: {exc}"
            logger.warning(f"GET {url} failed: {cause}")
            return TransportFailure(cause=cause)

    async def _save(self, url: str, resp: aiohttp.ClientResponse) -> FetchOutcome:
        content_type, extension = infer_type(
            resp.headers.get("Content-Type"),
            default_content_type=self._default_content_type,
            default_extension=self._default_extension,
        )
        name = self._storage.new_name(extension)
        try:
            size = await self._storage.write_stream(
                name, resp.content.iter_chunked(self._chunk_size)
            )
        except StorageWriteError as exc:
            logger.error(f"Storing {url} failed: {exc}")
            return TransportFailure(cause=str(exc))

        logger.info(f"Downloaded {url} -> {name} ({size} bytes, {content_type})")
        return FetchSuccess(
            file=DownloadedFile(
                path=self._storage.path_for(name),
                name=name,
                size=size,
                content_type=content_type,
                extension=extension,
                completed_at=utcnow(),
            ),
            http_code=resp.status,
        )
