"""
SQLite-backed record store for file addresses, cache statuses and file
data objects.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import aiosqlite

from .errors import RecordStoreError
from .infra.db import Database
from .interfaces import RecordStore
from .models import CacheLabel, CacheStatus, FileArtifact, Resource, utcnow


logger = logging.getLogger(__name__)

STATUS_BASE_URI = "http://data.lblod.info/file-address-cache-statuses"
FILE_BASE_URI = "http://data.lblod.info/files"


def _to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteRecordStore(RecordStore):
    """Record store on top of :class:`~filecache.infra.db.Database`."""

    def __init__(
        self,
        db: Database,
        *,
        status_base_uri: str = STATUS_BASE_URI,
        file_base_uri: str = FILE_BASE_URI,
    ) -> None:
        self.db = db
        self._status_base = status_base_uri.rstrip("/")
        self._file_base = file_base_uri.rstrip("/")

    async def __aenter__(self) -> "SqliteRecordStore":
        await self.db.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.db.close()

    # ------------------------------------------------------------------- #
    async def add_resource(self, uri: str, url: str) -> None:
        """Register (or re-point) a file address."""
        try:
            await self.db.insert_or_update("file_addresses", {"uri": uri, "url": url}, ["uri"])
        except aiosqlite.Error as exc:
            raise RecordStoreError(f"could not add {uri}: {exc}") from exc
        logger.info(f"Registered file address {uri} -> {url}")

    async def list_eligible(
        self,
        max_retries: int,
        pending_timeout: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> List[Resource]:
        cutoff = _to_db_time((now or utcnow()) - pending_timeout)
        sql = """
            SELECT fa.uri, fa.url, cs.label, cs.times_tried, cs.initiated_at
            FROM file_addresses fa
            LEFT JOIN cache_statuses cs ON cs.resource_uri = fa.uri
            WHERE (
                cs.label IS NULL
                OR cs.label = ?
                OR (cs.label = ? AND cs.initiated_at < ?)
            )
            AND (cs.times_tried IS NULL OR cs.times_tried < ?)
        """
        params = (CacheLabel.FAILED.value, CacheLabel.PENDING.value, cutoff, max_retries)
        try:
            rows = await self.db.fetch_all(sql, params)
        except aiosqlite.Error as exc:
            raise RecordStoreError(f"eligibility query failed: {exc}") from exc

        return [
            Resource(
                uri=row["uri"],
                url=row["url"],
                times_tried=row["times_tried"] or 0,
                status=CacheLabel(row["label"]) if row["label"] else None,
                initiated_at=_from_db_time(row["initiated_at"]),
            )
            for row in rows
        ]

    async def get_status(self, resource_uri: str) -> Optional[CacheStatus]:
        try:
            row = await self.db.fetch_one(
                "SELECT * FROM cache_statuses WHERE resource_uri = ?", (resource_uri,)
            )
        except aiosqlite.Error as exc:
            raise RecordStoreError(f"could not read status of {resource_uri}: {exc}") from exc
        if row is None:
            return None
        return CacheStatus(
            uri=row["uri"],
            resource_uri=row["resource_uri"],
            label=CacheLabel(row["label"]),
            http_status_code=row["http_status"],
            times_tried=row["times_tried"],
            initiated_at=_from_db_time(row["initiated_at"]),
            uuid=row["uuid"],
        )

    async def set_status(
        self,
        resource_uri: str,
        label: CacheLabel,
        http_code: Optional[int] = None,
        times_tried: int = 0,
        initiated_at: Optional[datetime] = None,
    ) -> CacheStatus:
        label = CacheLabel(label)
        uid = str(uuid.uuid4())
        status = CacheStatus(
            uri="/".join([self._status_base, label.value, uid]),
            resource_uri=resource_uri,
            label=label,
            http_status_code=http_code,
            times_tried=times_tried,
            initiated_at=initiated_at or utcnow(),
            uuid=uid,
        )
        logger.info(f"Setting {label.value} status for {resource_uri}")

        columns = ["uri", "resource_uri", "label", "http_status", "times_tried", "initiated_at", "uuid"]
        values = (
            status.uri,
            resource_uri,
            label.value,
            http_code,
            times_tried,
            _to_db_time(status.initiated_at),
            uid,
        )
        try:
            async with self.db.transaction() as conn:
                cursor = await conn.execute(
                    "SELECT 1 FROM file_addresses WHERE uri = ?", (resource_uri,)
                )
                if await cursor.fetchone() is None:
                    raise RecordStoreError(f"unknown file address {resource_uri}")
                # One statement: the previous status is never absent.
                await conn.execute(
                    self.db.upsert_sql("cache_statuses", columns, ["resource_uri"]), values
                )
        except aiosqlite.Error as exc:
            logger.error(
                f"Error while setting {label.value} status for {resource_uri}: {exc}"
            )
            raise RecordStoreError(str(exc)) from exc
        return status

    async def record_artifact(self, resource_uri: str, artifact: FileArtifact) -> str:
        """Write the virtual file object, then the physical one.

        The virtual object points at the file address; the physical object
        (``share://<name>``) points at the virtual one. When the second
        write fails the first is removed again.
        """
        virtual_uid = str(uuid.uuid4())
        virtual_uri = f"{self._file_base}/{virtual_uid}"
        physical_uri = f"share://{artifact.name}"

        await self._insert_file_object(virtual_uri, virtual_uid, resource_uri, artifact)
        try:
            await self._insert_file_object(
                physical_uri, str(uuid.uuid4()), virtual_uri, artifact
            )
        except RecordStoreError:
            logger.warning(f"Removing orphaned file object {virtual_uri}")
            await self._delete_file_object(virtual_uri)
            raise

        logger.info(f"Recorded file {artifact.name} for {resource_uri}")
        return virtual_uri

    async def list_artifacts(self, resource_uri: str) -> List[Dict]:
        """File objects reachable from a file address (virtual, then physical)."""
        rows = await self.db.fetch_all(
            """
            SELECT v.uri AS virtual_uri, p.uri AS physical_uri, v.name, v.format,
                   v.size, v.extension, v.created
            FROM file_data_objects v
            LEFT JOIN file_data_objects p ON p.data_source = v.uri
            WHERE v.data_source = ?
            """,
            (resource_uri,),
        )
        return [dict(row) for row in rows]

    async def count_by_label(self) -> Dict[str, int]:
        rows = await self.db.fetch_all(
            """
            SELECT COALESCE(cs.label, 'new') AS label, COUNT(*) AS count
            FROM file_addresses fa
            LEFT JOIN cache_statuses cs ON cs.resource_uri = fa.uri
            GROUP BY COALESCE(cs.label, 'new')
            """
        )
        return {row["label"]: row["count"] for row in rows}

    # ------------------------------------------------------------------- #
    async def _insert_file_object(
        self, uri: str, uid: str, data_source: str, artifact: FileArtifact
    ) -> None:
        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO file_data_objects
                        (uri, uuid, name, format, size, extension, created, data_source)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        uri,
                        uid,
                        artifact.name,
                        artifact.content_type,
                        artifact.size,
                        artifact.extension,
                        _to_db_time(artifact.created_at),
                        data_source,
                    ),
                )
        except aiosqlite.Error as exc:
            raise RecordStoreError(f"could not write file object {uri}: {exc}") from exc

    async def _delete_file_object(self, uri: str) -> None:
        try:
            async with self.db.transaction() as conn:
                await conn.execute("DELETE FROM file_data_objects WHERE uri = ?", (uri,))
        except aiosqlite.Error as exc:
            logger.error(f"Could not delete file object {uri}: {exc}")
