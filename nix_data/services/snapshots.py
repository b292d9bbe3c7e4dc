"""
Refresh snapshots and reconcile installed packages against them.

One refresh of a kind runs: probe the current version, skip when the stamp
already matches, resolve the source chain, fetch, then write. The whole refresh
holds the advisory lock of its kind.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from nix_data.core.settings import Settings
from nix_data.domain.errors import NixDataError, ProbeError
from nix_data.domain.models import (
    CacheSnapshot,
    InstalledPackage,
    SnapshotKind,
    SourceDescriptor,
    UnavailabilityReport,
    VersionToken,
)
from nix_data.services.fetcher import USE_EXISTING_CACHE, Fetcher
from nix_data.services.installed import InstalledSetCollector
from nix_data.services.reconciler import Reconciler
from nix_data.services.source_resolver import PROFILE_CHANNEL, SourceResolver
from nix_data.services.version_probe import VersionProbe
from nix_data.storage.cache_store import CacheStore

logger = logging.getLogger(__name__)

PACKAGE_KINDS = (
    SnapshotKind.LEGACY,
    SnapshotKind.FLAKE,
    SnapshotKind.NIXOS,
    SnapshotKind.PROFILE,
    SnapshotKind.NONNIXOS,
)


class SnapshotService:
    """Ties probing, fetching, storage and reconciliation together."""

    def __init__(
        self,
        settings: Settings,
        probe: VersionProbe,
        resolver: SourceResolver,
        fetcher: Fetcher,
        collector: InstalledSetCollector,
        reconciler: Reconciler,
    ):
        self.settings = settings
        self.probe = probe
        self.resolver = resolver
        self.fetcher = fetcher
        self.collector = collector
        self.reconciler = reconciler
        self._stores: Dict[SnapshotKind, CacheStore] = {}

    def store(self, kind: SnapshotKind) -> CacheStore:
        if kind not in self._stores:
            self._stores[kind] = CacheStore(self.settings, kind, builder=self.fetcher.builder)
        return self._stores[kind]

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _plan(self, kind: SnapshotKind) -> Tuple[VersionToken, List[SourceDescriptor]]:
        """Version token to stamp and sources to try for ``kind``."""
        if kind is SnapshotKind.FLAKE:
            version = await self.probe.current_version()
            pinned = await self.probe.pinned_revision()
            # A pin fully determines the package set.
            return pinned or version, self.resolver.resolve(version, pinned)

        if kind is SnapshotKind.LEGACY:
            version = await self.probe.current_version()
            return version, self.resolver.resolve_legacy(version)

        if kind is SnapshotKind.NIXOS:
            channel = self.resolver.channel_for(await self.probe.current_version())
            latest = await self.probe.latest_channel_version(channel)
            return latest, self.resolver.resolve_channel(channel)

        if kind is SnapshotKind.PROFILE:
            latest = await self.probe.latest_channel_version(PROFILE_CHANNEL)
            return latest, self.resolver.resolve_profile()

        if kind is SnapshotKind.NONNIXOS:
            latest = await self.probe.latest_database_version()
            return latest, self.resolver.resolve_nonnixos()

        channel = self.resolver.channel_for(await self.probe.current_version())
        latest = await self.probe.latest_channel_version(channel)
        return latest, self.resolver.resolve_options(channel)

    async def refresh(self, kind: SnapshotKind) -> CacheSnapshot:
        """
        Bring the snapshot of ``kind`` up to date.

        Returns the snapshot now on disk. When the version cannot be determined
        or no source is reachable, a previous snapshot is returned unchanged.

        Raises:
            ProbeError: the version is unknown and nothing is cached.
            FetchError: every source failed and nothing is cached.
            StoreError: the new snapshot could not be written.
        """
        store = self.store(kind)
        async with store.locked():
            try:
                version, sources = await self._plan(kind)
            except ProbeError as e:
                if not store.has_data():
                    raise
                logger.warning(f"Could not probe {kind.value} version, using cached data: {e}")
                return self._existing(store)

            if store.is_fresh(version):
                logger.info(f"{kind.value} is up to date ({version})")
                return CacheSnapshot(kind=kind, version=version, data_path=store.data_path)

            logger.info(f"Refreshing {kind.value} to {version}")
            result = await self.fetcher.fetch(sources, existing=store.data_path)
            if result is USE_EXISTING_CACHE:
                return self._existing(store)

            if kind is SnapshotKind.OPTIONS:
                return await store.write_blob(version, result.raw)
            return await store.write(version, result.records)

    def _existing(self, store: CacheStore) -> CacheSnapshot:
        return CacheSnapshot(kind=store.kind, version=store.read_stamp(), data_path=store.data_path)

    async def refresh_options(self) -> CacheSnapshot:
        """Cache the ``options.json`` of the system's channel."""
        return await self.refresh(SnapshotKind.OPTIONS)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _installed_for(self, kind: SnapshotKind, config_paths: Optional[Iterable[Path]]) -> Set[InstalledPackage]:
        if kind is SnapshotKind.PROFILE:
            return await self.collector.from_profile()
        if kind is SnapshotKind.NONNIXOS:
            return await self.collector.from_profile() | await self.collector.from_env()
        return await self.collector.from_config(config_paths)

    async def installed_versions(
        self,
        kind: SnapshotKind,
        config_paths: Optional[Iterable[Path]] = None,
    ) -> Dict[str, str]:
        """
        Version of every installed package according to the snapshot of ``kind``.

        Configuration-declared packages are checked against the legacy, flake
        and nixos snapshots; profile packages against the profile snapshot;
        profile and nix-env packages against the non-NixOS snapshot.
        """
        if kind not in PACKAGE_KINDS:
            raise ValueError(f"{kind.value} is not a package snapshot")
        await self.refresh(kind)
        installed = await self._installed_for(kind, config_paths)
        with self.store(kind).open_reader() as db:
            return self.reconciler.versions_of(installed, db)

    async def unavailable_packages(
        self,
        kind: SnapshotKind,
        config_paths: Optional[Iterable[Path]] = None,
    ) -> UnavailabilityReport:
        """Installed packages that would be missing, broken or insecure in the snapshot of ``kind``."""
        if kind not in PACKAGE_KINDS:
            raise ValueError(f"{kind.value} is not a package snapshot")
        await self.refresh(kind)
        installed = await self._installed_for(kind, config_paths)
        with self.store(kind).open_reader() as db:
            return await self.reconciler.unavailable(installed, db)


if __name__ == "__main__":
    import asyncio
    import sys

    from nix_data.core.dependencies import get_snapshot_service
    from nix_data.core.log_config import configure_logging

    configure_logging()
    kind = SnapshotKind(sys.argv[1]) if len(sys.argv) > 1 else SnapshotKind.NONNIXOS

    print(f"Refreshing {kind.value} snapshot")

    try:
        snapshot = asyncio.run(get_snapshot_service().refresh(kind))
        print(f"\nSnapshot {snapshot.version} available at: {snapshot.data_path}")
    except NixDataError as e:
        print(f"\nError: {e}")
        sys.exit(1)
