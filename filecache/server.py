"""
HTTP trigger endpoints for the caching run.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Set

from aiohttp import web

from .errors import EligibilityQueryError
from .orchestrator import FetchOrchestrator

logger = logging.getLogger(__name__)

ORCHESTRATOR_KEY = web.AppKey("orchestrator", FetchOrchestrator)
BACKGROUND_KEY = web.AppKey("background_runs", set)


async def hello(request: web.Request) -> web.Response:
    return web.Response(text="Hello from file-address-cache")


async def check_urls(request: web.Request) -> web.Response:
    """Start one caching run; wait for it unless ``?wait=false``."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    wait = request.query.get("wait", "true").lower() not in ("0", "false", "no")

    if not wait:
        runs: Set[asyncio.Task] = request.app[BACKGROUND_KEY]
        task = asyncio.create_task(_background_run(orchestrator))
        runs.add(task)
        task.add_done_callback(runs.discard)
        return web.json_response({"status": "started"}, status=202)

    try:
        summary = await orchestrator.run()
    except EligibilityQueryError as exc:
        return web.json_response({"status": "error", "error": str(exc)}, status=500)

    return web.json_response(
        {
            "status": "done",
            "eligible": summary.eligible,
            "results": {k.value: v for k, v in summary.results.items()},
        }
    )


async def _background_run(orchestrator: FetchOrchestrator) -> None:
    try:
        await orchestrator.run()
    except EligibilityQueryError as exc:
        logger.error(f"Background caching run aborted: {exc}")


async def _drain_background(app: web.Application) -> None:
    runs = app[BACKGROUND_KEY]
    if runs:
        logger.info(f"Waiting for {len(runs)} background run(s)")
        await asyncio.gather(*runs, return_exceptions=True)


def create_app(orchestrator: FetchOrchestrator) -> web.Application:
    app = web.Application()
    app[ORCHESTRATOR_KEY] = orchestrator
    app[BACKGROUND_KEY] = set()
    app.router.add_get("/", hello)
    app.router.add_get("/checkurls", check_urls)
    app.on_shutdown.append(_drain_background)
    return app
