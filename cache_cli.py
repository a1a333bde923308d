#!/usr/bin/env python3
"""
File address cache CLI - commands for running and inspecting the cache.

Usage: python cache_cli.py <command> [options]

Commands:
    serve               - Start the trigger server and the recurring job
    run                 - Run one caching invocation and exit
    add <uri> <url>     - Register a file address
    status              - Show how many file addresses carry each status
    files <uri>         - Show the cached files recorded for a file address

The config file is taken from FILECACHE_CONFIG (default: config.yaml).
"""

import asyncio
import sys

from filecache.config import Settings, load_config
from filecache.infra.db import Database
from filecache.store import SqliteRecordStore
from main import main_with_scheduler, run_once, setup_logging


class Colors:
    """ANSI color codes for terminal output."""
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    BOLD = "\033[1m"
    END = "\033[0m"


LABEL_COLORS = {
    "cached": Colors.GREEN,
    "pending": Colors.BLUE,
    "failed": Colors.YELLOW,
    "dead": Colors.RED,
}


def _store(settings: Settings) -> SqliteRecordStore:
    return SqliteRecordStore(
        Database(settings.db_path),
        status_base_uri=settings.status_base_uri,
        file_base_uri=settings.file_base_uri,
    )


async def add_address(settings: Settings, uri: str, url: str) -> None:
    async with _store(settings) as store:
        await store.add_resource(uri, url)
    print(f"{Colors.GREEN}✅ Registered {uri}{Colors.END}")


async def show_status(settings: Settings) -> None:
    async with _store(settings) as store:
        counts = await store.count_by_label()

    print(f"{Colors.BOLD}File address cache status{Colors.END}")
    if not counts:
        print("  no file addresses registered")
        return
    for label in ("new", "pending", "failed", "cached", "dead"):
        if label in counts:
            color = LABEL_COLORS.get(label, "")
            print(f"  {color}{label:<8}{Colors.END} {counts[label]}")


async def show_files(settings: Settings, uri: str) -> None:
    async with _store(settings) as store:
        status = await store.get_status(uri)
        files = await store.list_artifacts(uri)

    if status is None:
        print(f"{uri}: no status yet")
    else:
        code = f" (HTTP {status.http_status_code})" if status.http_status_code else ""
        print(f"{uri}: {status.label.value}{code}, tried {status.times_tried}x, "
              f"since {status.initiated_at:%Y-%m-%d %H:%M:%S}")
    for row in files:
        print(f"  {row['physical_uri']}  {row['format']}  {row['size']} bytes  {row['created']}")


def main(argv) -> int:
    if len(argv) < 2 or argv[1] in ("-h", "--help", "help"):
        print(__doc__)
        return 0

    command = argv[1]
    setup_logging()
    settings = load_config()

    if command == "serve":
        asyncio.run(main_with_scheduler(settings))
    elif command == "run":
        return asyncio.run(run_once(settings))
    elif command == "add" and len(argv) == 4:
        asyncio.run(add_address(settings, argv[2], argv[3]))
    elif command == "status":
        asyncio.run(show_status(settings))
    elif command == "files" and len(argv) == 3:
        asyncio.run(show_files(settings, argv[2]))
    else:
        print(f"{Colors.RED}Unknown command or wrong arguments: {' '.join(argv[1:])}{Colors.END}")
        print(__doc__)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
