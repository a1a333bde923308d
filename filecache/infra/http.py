"""
http.py – Async HTTP client built on *aiohttp* for streamed downloads.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Mapping, Optional

import aiohttp

logger = logging.getLogger(__name__)


class HttpClient:
    """
    Lazily created *aiohttp.ClientSession* with

    * default headers sent on every request (user-agent lives here)
    * a total timeout per request
    * redirects followed up to ``max_redirects``

    No retries here: a resource gets one GET per run and its retry budget
    is tracked in the record store.
    """

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 300.0,
        max_redirects: int = 10,
        default_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_redirects = max_redirects
        self._headers: Dict[str, str] = dict(default_headers or {})

    async def __aenter__(self) -> "HttpClient":  # noqa: D401
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None if self._owns_session else self._session

    @asynccontextmanager
    async def stream(self, method: str, url: str, **kwargs) -> AsyncIterator[aiohttp.ClientResponse]:
        """Yield the response of one request with its body still unread.

        The status code is not checked here.
        """
        session = self._get_session()
        kwargs.setdefault("allow_redirects", True)
        kwargs.setdefault("max_redirects", self._max_redirects)
        kwargs.setdefault("timeout", self._timeout)

        logger.debug("HTTP %s %s", method, url)
        async with session.request(method, url, **kwargs) as resp:
            yield resp
