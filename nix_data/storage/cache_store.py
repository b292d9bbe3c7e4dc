"""
On-disk storage of one snapshot kind.

Each kind owns two files under the cache directory:

* ``<kind>.ver`` - the version token of the last successful refresh, raw text
* ``<kind>.db`` (or ``.json``) - the snapshot contents

Readers never see a partial snapshot: new contents are built in a temporary
file next to the data file and renamed over it, and the stamp is replaced
last. A crash mid-write leaves the previous data file and stamp in place.
Refreshes of the same kind from different processes serialise on an advisory
lock file (``<kind>.ver.lock``).
"""
from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

import aiofiles
import portalocker

from nix_data.core.settings import Settings
from nix_data.domain.errors import StoreError
from nix_data.domain.models import CacheSnapshot, PackageRecord, SnapshotKind, VersionToken
from nix_data.services.database_builder import DatabaseBuilder
from nix_data.storage.package_db import SqlitePackageDatabase

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 600.0


class CacheStore:
    """Owns the stamp and data file of one snapshot kind."""

    def __init__(
        self,
        settings: Settings,
        kind: SnapshotKind,
        builder: Optional[DatabaseBuilder] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.settings = settings
        self.kind = kind
        self.builder = builder or DatabaseBuilder(settings.batch_size)
        self.lock_timeout = lock_timeout

    @property
    def stamp_path(self) -> Path:
        return self.settings.cache_dir / f"{self.kind.value}.ver"

    @property
    def data_path(self) -> Path:
        return self.settings.cache_dir / f"{self.kind.value}{self.kind.data_suffix}"

    @property
    def lock_path(self) -> Path:
        return self.settings.cache_dir / f"{self.kind.value}.ver.lock"

    def _temp_path(self, path: Path) -> Path:
        return path.with_name(f"{path.name}.{os.getpid()}.tmp")

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_stamp(self) -> Optional[VersionToken]:
        try:
            return self.stamp_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreError(f"Cannot read {self.stamp_path}: {e}") from e

    def has_data(self) -> bool:
        return self.data_path.exists()

    def is_fresh(self, version: VersionToken) -> bool:
        """True when the stamp equals ``version`` and the data file exists."""
        return self.read_stamp() == version and self.has_data()

    def snapshot(self) -> Optional[CacheSnapshot]:
        """The snapshot currently on disk, if there is one."""
        version = self.read_stamp()
        if version is None or not self.has_data():
            return None
        return CacheSnapshot(kind=self.kind, version=version, data_path=self.data_path)

    def open_reader(self) -> SqlitePackageDatabase:
        """Handle for point lookups by attribute."""
        if self.kind is SnapshotKind.OPTIONS:
            raise StoreError("The options snapshot is a JSON file, not a package database")
        if not self.has_data():
            raise StoreError(f"No {self.kind.value} snapshot at {self.data_path}")
        return SqlitePackageDatabase(self.data_path)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def locked(self) -> AsyncIterator[None]:
        """Hold the advisory lock of this snapshot kind."""
        self.settings.ensure_cache_dir()
        lock = portalocker.Lock(str(self.lock_path), mode="a", timeout=self.lock_timeout)
        try:
            await asyncio.to_thread(lock.acquire)
        except portalocker.exceptions.LockException as e:
            raise StoreError(f"Could not lock {self.lock_path}: {e}") from e
        try:
            yield
        finally:
            lock.release()

    def _build_database(self, path: Path, records: List[PackageRecord]) -> int:
        conn = sqlite3.connect(str(path))
        try:
            return self.builder.load(conn, records)
        finally:
            conn.close()

    async def write(self, version: VersionToken, records: List[PackageRecord]) -> CacheSnapshot:
        """
        Replace the snapshot with ``records`` and stamp it with ``version``.

        Raises:
            StoreError: the database could not be built or moved into place.
        """
        self.settings.ensure_cache_dir()
        tmp_path = self._temp_path(self.data_path)
        tmp_path.unlink(missing_ok=True)

        try:
            count = await asyncio.to_thread(self._build_database, tmp_path, records)
            os.replace(tmp_path, self.data_path)
        except (sqlite3.Error, OSError) as e:
            tmp_path.unlink(missing_ok=True)
            logger.error(f"Failed to write {self.kind.value} snapshot: {e}")
            raise StoreError(f"Failed to write {self.kind.value} snapshot: {e}") from e

        await self._write_stamp(version)
        logger.info(f"Cached {count} packages for {self.kind.value} version {version}")
        return CacheSnapshot(kind=self.kind, version=version, data_path=self.data_path)

    async def write_blob(self, version: VersionToken, data: bytes) -> CacheSnapshot:
        """Replace a flat-file snapshot (e.g. options.json) and stamp it."""
        self.settings.ensure_cache_dir()
        tmp_path = self._temp_path(self.data_path)
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            os.replace(tmp_path, self.data_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StoreError(f"Failed to write {self.data_path}: {e}") from e

        await self._write_stamp(version)
        logger.info(f"Cached {self.kind.value} version {version}")
        return CacheSnapshot(kind=self.kind, version=version, data_path=self.data_path)

    async def _write_stamp(self, version: VersionToken) -> None:
        tmp_path = self._temp_path(self.stamp_path)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(version)
            os.replace(tmp_path, self.stamp_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StoreError(f"Failed to write {self.stamp_path}: {e}") from e
