"""
Local file storage for downloaded content.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import AsyncIterator, Iterator, Union

from ..errors import StorageWriteError

logger = logging.getLogger(__name__)


class LocalStorage:
    """Writes byte streams to uniquely named files under one root directory."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def new_name(self, extension: str) -> str:
        """A fresh file name; never derived from the remote URL."""
        return f"{uuid.uuid4()}.{extension}"

    def path_for(self, name: str) -> Path:
        return self.root / name

    async def write_stream(self, name: str, chunks: AsyncIterator[bytes]) -> int:
        """Write ``chunks`` to ``name`` and return the number of bytes written.

        Whatever goes wrong, a partial file created by this call is removed
        before the error leaves this method; an existing file is never touched.
        Disk errors surface as :class:`StorageWriteError`, errors from the
        chunk source are re-raised unchanged.
        """
        path = self.path_for(name)
        size = 0
        opened = False
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with path.open("xb") as fh:
                opened = True
                async for chunk in chunks:
                    fh.write(chunk)
                    size += len(chunk)
        except OSError as exc:
            if opened:
                self.delete(path)
            raise StorageWriteError(f"could not write {path}: {exc}", path=str(path)) from exc
        except BaseException:
            if opened:
                self.delete(path)
            raise

        logger.debug(f"Wrote {size} bytes to {path}")
        return size

    def delete(self, path: Union[str, Path]) -> None:
        """Remove a file if it exists."""
        try:
            Path(path).unlink()
            logger.info(f"Deleted {path}")
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error(f"Could not delete {path}: {exc}")

    @contextmanager
    def discard_on_error(self, path: Union[str, Path]) -> Iterator[Path]:
        """Delete ``path`` if the guarded block raises."""
        try:
            yield Path(path)
        except BaseException:
            self.delete(path)
            raise
