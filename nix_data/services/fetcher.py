"""
Retrieve a snapshot through an ordered chain of sources.

Each source is downloaded (or, for live searches, produced by ``nix search``),
decompressed and decoded. Any failure moves on to the next source. When every
source fails and a previous snapshot exists, the caller is told to keep using
it instead of receiving an error.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Union

import aiofiles
import brotli
import httpx
from pydantic import BaseModel, Field

from nix_data.core.settings import Settings
from nix_data.domain.errors import CommandError, DecodeError, FetchError
from nix_data.domain.models import PackageRecord, PayloadFormat, SourceDescriptor
from nix_data.services.commands import NixCommands
from nix_data.services.database_builder import DatabaseBuilder

logger = logging.getLogger(__name__)


class _UseExistingCache:
    """Sentinel: every source failed, keep the snapshot already on disk."""

    def __repr__(self) -> str:
        return "USE_EXISTING_CACHE"


USE_EXISTING_CACHE = _UseExistingCache()


class FetchedSnapshot(BaseModel):
    """Decoded payload of the first source that succeeded."""

    source: SourceDescriptor
    records: List[PackageRecord] = Field(default_factory=list)
    raw: Optional[bytes] = Field(default=None, description="Decompressed payload for flat-file snapshots.")


FetchResult = Union[FetchedSnapshot, _UseExistingCache]


class Fetcher:
    """Downloads and decodes sources in order until one succeeds."""

    def __init__(
        self,
        commands: NixCommands,
        settings: Settings,
        builder: Optional[DatabaseBuilder] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.commands = commands
        self.settings = settings
        self.builder = builder or DatabaseBuilder(settings.batch_size)
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.settings.http_timeout,
            transport=self.transport,
        )

    async def fetch(self, sources: List[SourceDescriptor], existing: Optional[Path] = None) -> FetchResult:
        """
        Try each source in order.

        Returns:
            The decoded snapshot of the first working source, or
            ``USE_EXISTING_CACHE`` when all failed and ``existing`` is present.

        Raises:
            FetchError: every source failed and there is nothing cached.
        """
        failures: List[str] = []
        for source in sources:
            try:
                logger.info(f"Fetching {source.describe()}...")
                result = await self._fetch_one(source)
                logger.info(f"Fetched {source.describe()}")
                return result
            except (httpx.HTTPError, CommandError, DecodeError, OSError) as e:
                logger.warning(f"Source {source.describe()} failed: {e}")
                failures.append(f"{source.describe()}: {e}")

        if existing is not None and existing.exists():
            logger.info(f"No source reachable, using existing cache {existing}")
            return USE_EXISTING_CACHE

        detail = "; ".join(failures) if failures else "no sources configured"
        raise FetchError(f"Failed to fetch snapshot ({detail})")

    async def _fetch_one(self, source: SourceDescriptor) -> FetchedSnapshot:
        if source.transport == "command":
            payload = await self.commands.run_search(source.location)
            if source.compression == "brotli":
                payload = self._decompress(payload)
            return self._decode_bytes(source, payload)

        self.settings.ensure_cache_dir()
        fd, tmp_name = tempfile.mkstemp(dir=self.settings.cache_dir, suffix=".download")
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            await self._download(source, tmp_path)
            if source.payload is PayloadFormat.RELATIONAL_DUMP:
                return FetchedSnapshot(source=source, records=self.builder.decode_relational_dump(tmp_path))
            async with aiofiles.open(tmp_path, "rb") as f:
                payload = await f.read()
            return self._decode_bytes(source, payload)
        finally:
            tmp_path.unlink(missing_ok=True)

    async def _download(self, source: SourceDescriptor, target: Path) -> None:
        """Stream ``source`` into ``target``, decompressing on the way."""
        async with self._client() as client:
            async with client.stream("GET", source.location) as response:
                response.raise_for_status()

                # httpx already undoes a br Content-Encoding.
                transfer_encoded = "br" in response.headers.get("content-encoding", "")
                decompressor = None
                if source.compression == "brotli" and not transfer_encoded:
                    decompressor = brotli.Decompressor()

                downloaded = 0
                async with aiofiles.open(target, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        downloaded += len(chunk)
                        if decompressor is not None:
                            try:
                                chunk = decompressor.process(chunk)
                            except brotli.error as e:
                                raise DecodeError(f"Corrupt brotli stream from {source.location}: {e}") from e
                        await f.write(chunk)

                if decompressor is not None and not decompressor.is_finished():
                    raise DecodeError(f"Truncated brotli stream from {source.location}")
                logger.debug(f"Downloaded {downloaded} bytes from {source.location}")

    def _decompress(self, payload: bytes) -> bytes:
        try:
            return brotli.decompress(payload)
        except brotli.error as e:
            raise DecodeError(f"Corrupt brotli payload: {e}") from e

    def _decode_bytes(self, source: SourceDescriptor, payload: bytes) -> FetchedSnapshot:
        if source.payload is PayloadFormat.OPTIONS_JSON:
            try:
                json.loads(payload)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise DecodeError(f"{source.describe()} is not valid JSON: {e}") from e
            return FetchedSnapshot(source=source, raw=payload)

        if source.payload is PayloadFormat.RELATIONAL_DUMP:
            raise DecodeError(f"{source.describe()}: database dumps are only fetched over HTTP")

        records = self.builder.decode_json(payload, source.shape)
        return FetchedSnapshot(source=source, records=records)
