"""
Determine which upstream snapshot is current.

Local probes ask the system for its NixOS version and for a registry pin of
nixpkgs. Remote probes ask the channel server (or the precomputed database
mirror) which version it currently serves.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Optional
from urllib.parse import parse_qs, urlsplit

import httpx

from nix_data.core.settings import Settings
from nix_data.domain.errors import CommandError, ProbeError
from nix_data.domain.models import VersionToken
from nix_data.services.commands import NixCommands, first_line

logger = logging.getLogger(__name__)

NIXPKGS_REGISTRY_ENTRY = "flake:nixpkgs"
_FULL_REVISION_RE = re.compile(r"^[0-9a-f]{40}$")


def revision_from_flake_ref(ref: str) -> Optional[str]:
    """
    Extract a pinned commit from a flake reference, if it has one.

    Handles ``path:/nix/store/...-source?...&rev=<sha>`` and
    ``github:NixOS/nixpkgs/<sha>`` forms. Branch references are not pins.
    """
    parts = urlsplit(ref)
    revs = parse_qs(parts.query).get("rev")
    if revs and _FULL_REVISION_RE.match(revs[0]):
        return revs[0]
    last_segment = parts.path.rstrip("/").rsplit("/", 1)[-1]
    if _FULL_REVISION_RE.match(last_segment):
        return last_segment
    return None


class VersionProbe:
    """Reads the current version token and the nixpkgs pin."""

    def __init__(
        self,
        commands: NixCommands,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.commands = commands
        self.settings = settings
        self.transport = transport

    async def current_version(self) -> VersionToken:
        """
        Version reported by ``nixos-version``.

        Raises:
            ProbeError: the program is missing or its output cannot be parsed.
        """
        try:
            output = await self.commands.run_version_probe(json_output=True)
        except CommandError as e:
            if e.returncode is None:
                raise ProbeError(f"Cannot determine NixOS version: {e}") from e
            # Releases predating --json only print the plain version.
            logger.debug(f"nixos-version --json failed, retrying without it: {e}")
            return await self._plain_version()

        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise ProbeError(f"Unparsable nixos-version output: {output!r}") from e

        version = data.get("nixosVersion") if isinstance(data, dict) else None
        if not isinstance(version, str) or not version.strip():
            raise ProbeError("No NixOS version found in nixos-version output")
        logger.debug(f"Current NixOS version: {version}")
        return version.strip()

    async def _plain_version(self) -> VersionToken:
        try:
            output = await self.commands.run_version_probe(json_output=False)
        except CommandError as e:
            raise ProbeError(f"Cannot determine NixOS version: {e}") from e
        line = first_line(output)
        if not line:
            raise ProbeError("nixos-version printed nothing")
        # "24.05.1234.abcdef (Uakari)"
        return line.split()[0]

    async def pinned_revision(self) -> Optional[str]:
        """
        Commit the nixpkgs registry entry is pinned to, or None.

        Entries are listed in resolution order (user, system, global); the first
        nixpkgs entry is the effective one, pinned or not.
        """
        try:
            output = await self.commands.run_registry_list()
        except CommandError as e:
            logger.debug(f"Could not list flake registry: {e}")
            return None

        for line in output.splitlines():
            parts = line.split()
            if len(parts) >= 3 and parts[1] == NIXPKGS_REGISTRY_ENTRY:
                revision = revision_from_flake_ref(parts[2])
                if revision:
                    logger.debug(f"nixpkgs is pinned to {revision}")
                return revision
        return None

    # ------------------------------------------------------------------
    # Remote probes
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.settings.http_timeout,
            transport=self.transport,
        )

    async def latest_channel_version(self, channel: str) -> VersionToken:
        """
        Version currently served by a channel, e.g. ``nixos-24.05.1234.abcdef``.

        The channel URL redirects to the release directory; its last path
        segment names the release.
        """
        url = self.settings.channel_url.format(channel=channel)
        try:
            async with self._client() as client:
                response = await client.head(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProbeError(f"Could not find latest version of {channel}: {e}") from e

        segment = response.url.path.rstrip("/").rsplit("/", 1)[-1]
        if not segment:
            raise ProbeError(f"Unexpected redirect target for {channel}: {response.url}")
        logger.info(f"Latest {channel} version: {segment}")
        return segment

    async def latest_database_version(self) -> VersionToken:
        """Version of the precomputed database published for non-NixOS systems."""
        url = self.settings.nonnixos_version_url
        try:
            async with self._client() as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProbeError(f"Could not find latest nixpkgs version: {e}") from e

        version = response.text.strip()
        if version.startswith("nixos-"):
            version = version[len("nixos-"):]
        if not version:
            raise ProbeError(f"Empty version file at {url}")
        logger.debug(f"Latest nixpkgs database version: {version}")
        return version
