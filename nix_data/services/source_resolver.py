"""
Compute the ordered list of upstream sources for a snapshot.

The first source that can be fetched and decoded wins; later entries are
progressively slower or less specific fallbacks.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from nix_data.core.settings import Settings
from nix_data.domain.models import (
    PayloadFormat,
    RecordShape,
    SourceDescriptor,
    VersionToken,
)
from nix_data.domain.release_lines import UNSTABLE, ReleaseLineTable

logger = logging.getLogger(__name__)

PROFILE_CHANNEL = "nixpkgs-unstable"


class SourceResolver:
    """Maps version tokens and pins to source descriptors."""

    def __init__(self, settings: Settings, release_lines: Optional[ReleaseLineTable] = None):
        self.settings = settings
        self.release_lines = release_lines or ReleaseLineTable(settings.unreleased_lines)

    def release_line(self, version: VersionToken) -> str:
        return self.release_lines.release_line(version)

    def channel_for(self, version: VersionToken) -> str:
        """NixOS channel name for the release line of ``version``."""
        return f"nixos-{self.release_line(version)}"

    # ------------------------------------------------------------------
    # Descriptor builders
    # ------------------------------------------------------------------

    def _revision_data(self, release_line: str, revision: str) -> SourceDescriptor:
        return SourceDescriptor(
            location=self.settings.revision_data_url.format(release_line=release_line, revision=revision),
            payload=PayloadFormat.PACKAGE_LIST_JSON,
            compression="brotli",
            shape=RecordShape.LEGACY,
            label=f"revision {revision} data ({release_line})",
        )

    def _release_database(self, release_line: str) -> SourceDescriptor:
        return SourceDescriptor(
            location=self.settings.release_database_url.format(release_line=release_line),
            payload=PayloadFormat.RELATIONAL_DUMP,
            compression="brotli",
            label=f"precomputed database ({release_line})",
        )

    def _live_search(self, flake_ref: str) -> SourceDescriptor:
        return SourceDescriptor(
            location=flake_ref,
            transport="command",
            payload=PayloadFormat.SEARCH_JSON,
            shape=RecordShape.FLAKE,
            label=f"nix search {flake_ref}",
        )

    def _channel_packages(self, channel: str, shape: RecordShape) -> SourceDescriptor:
        return SourceDescriptor(
            location=self.settings.channel_packages_url.format(channel=channel),
            payload=PayloadFormat.PACKAGE_LIST_JSON,
            compression="brotli",
            shape=shape,
            label=f"{channel} packages.json",
        )

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def resolve(self, version: VersionToken, pinned: Optional[str] = None) -> List[SourceDescriptor]:
        """
        Sources for the system package set.

        With a pin: per-revision data under the implied release line, the same
        revision under "unstable", then a live search of that exact revision.
        Without: the release line's precomputed database, then a live search.
        """
        release_line = self.release_line(version)
        search_flake = self.settings.search_flake

        if pinned:
            sources = [self._revision_data(release_line, pinned)]
            if release_line != UNSTABLE:
                sources.append(self._revision_data(UNSTABLE, pinned))
            sources.append(self._live_search(f"{search_flake}/{pinned}"))
        else:
            sources = [
                self._release_database(release_line),
                self._live_search(search_flake),
            ]

        logger.debug(f"Sources for {version} (pin={pinned}): {[s.describe() for s in sources]}")
        return sources

    def resolve_legacy(self, version: VersionToken) -> List[SourceDescriptor]:
        """Sources for channel-based (non-flake) NixOS systems."""
        release_line = self.release_line(version)
        return [
            SourceDescriptor(
                location=self.settings.legacy_packages_url.format(release_line=release_line, version=version),
                payload=PayloadFormat.PACKAGE_LIST_JSON,
                compression="brotli",
                shape=RecordShape.LEGACY,
                label=f"nixos-{version} packages.json",
            ),
            self._release_database(release_line),
        ]

    def resolve_channel(self, channel: str, shape: RecordShape = RecordShape.NIXOS) -> List[SourceDescriptor]:
        """Sources for the full package list currently served by a channel."""
        return [self._channel_packages(channel, shape)]

    def resolve_profile(self) -> List[SourceDescriptor]:
        """Sources used to look up packages installed with ``nix profile``."""
        return [
            self._channel_packages(PROFILE_CHANNEL, RecordShape.NIXOS),
            self._live_search(self.settings.search_flake),
        ]

    def resolve_nonnixos(self) -> List[SourceDescriptor]:
        """Sources for systems that only run the Nix package manager."""
        return [
            SourceDescriptor(
                location=self.settings.nonnixos_database_url,
                payload=PayloadFormat.RELATIONAL_DUMP,
                compression="brotli",
                label="nixpkgs-unstable precomputed database",
            ),
        ]

    def resolve_options(self, channel: str) -> List[SourceDescriptor]:
        """Sources for a channel's options.json."""
        return [
            SourceDescriptor(
                location=self.settings.channel_options_url.format(channel=channel),
                payload=PayloadFormat.OPTIONS_JSON,
                compression="brotli",
                label=f"{channel} options.json",
            ),
        ]
