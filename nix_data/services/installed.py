"""
Enumerate the packages a user has installed.

Three mechanisms are supported, each optional:

* declarative configuration: ``environment.systemPackages`` in NixOS config files
* ``nix profile``: the profile's ``manifest.json``
* ``nix-env``: ``nix-env -q --json`` (keyed by pname, not attribute path)

A mechanism whose data source is missing contributes nothing. Malformed
entries are logged and skipped.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, List, Optional, Set

import aiofiles

from nix_data.core.settings import Settings
from nix_data.domain.errors import CommandError
from nix_data.domain.models import InstalledPackage, InstallOrigin
from nix_data.services.commands import NixCommands

logger = logging.getLogger(__name__)

CONFIG_NAMESPACE_PREFIX = "pkgs."
LEGACY_PACKAGES_PREFIX = "legacyPackages"


def normalize_config_attribute(item: str) -> str:
    """``pkgs.hello`` -> ``hello``; other references are kept as written."""
    if item.startswith(CONFIG_NAMESPACE_PREFIX):
        return item[len(CONFIG_NAMESPACE_PREFIX):]
    return item


def profile_attribute(attr_path: str, original_url: str) -> Optional[str]:
    """
    Canonical attribute for a profile element.

    ``legacyPackages.x86_64-linux.hello`` -> ``hello``; anything else becomes
    ``<originalUrl>#<attrPath>``.
    """
    if attr_path.startswith(LEGACY_PACKAGES_PREFIX):
        parts = attr_path.split(".")
        if len(parts) < 3:
            return None
        return ".".join(parts[2:])
    return f"{original_url}#{attr_path}"


def parse_profile_element(element: Any, store_hash_prefix_len: int = 44) -> Optional[InstalledPackage]:
    """Turn one manifest element into an installed package, or None if unusable."""
    if not isinstance(element, dict):
        return None
    attr_path = element.get("attrPath")
    original_url = element.get("originalUrl")
    store_paths = element.get("storePaths")
    if not isinstance(attr_path, str) or not isinstance(original_url, str):
        return None
    if not isinstance(store_paths, list) or not store_paths or not isinstance(store_paths[0], str):
        return None

    attribute = profile_attribute(attr_path, original_url)
    # "/nix/store/<32 char hash>-" precedes the name
    installed_name = store_paths[0][store_hash_prefix_len:]
    if attribute is None or not installed_name:
        return None
    return InstalledPackage(
        attribute=attribute,
        origin=InstallOrigin.PROFILE,
        installed_name=installed_name,
        original_url=original_url,
    )


def _manifest_elements(manifest: Any) -> List[Any]:
    if not isinstance(manifest, dict):
        return []
    elements = manifest.get("elements")
    # Manifest version 3 keys elements by name.
    if isinstance(elements, dict):
        return list(elements.values())
    if isinstance(elements, list):
        return elements
    return []


class InstalledSetCollector:
    """Collects installed packages from every enabled mechanism."""

    def __init__(self, commands: NixCommands, settings: Settings):
        self.commands = commands
        self.settings = settings

    async def from_config(self, paths: Optional[Iterable[Path]] = None) -> Set[InstalledPackage]:
        """Union of ``environment.systemPackages`` across configuration files."""
        paths = list(paths) if paths is not None else list(self.settings.system_config_files)
        attributes: Set[str] = set()
        for path in paths:
            if not path.exists():
                logger.debug(f"Configuration file {path} does not exist")
                continue
            try:
                items = await self.commands.read_config_array(path)
            except (CommandError, OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not read packages from {path}: {e}")
                continue
            attributes.update(normalize_config_attribute(item) for item in items)

        return {InstalledPackage(attribute=a, origin=InstallOrigin.DECLARATIVE_CONFIG) for a in attributes}

    async def from_profile(self, manifest_path: Optional[Path] = None) -> Set[InstalledPackage]:
        """Packages installed with ``nix profile``."""
        path = manifest_path or self.settings.profile_manifest
        if not path.exists():
            logger.debug(f"No profile manifest at {path}")
            return set()

        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                manifest = json.loads(await f.read())
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read profile manifest {path}: {e}")
            return set()

        packages: Set[InstalledPackage] = set()
        for element in _manifest_elements(manifest):
            package = parse_profile_element(element, self.settings.store_hash_prefix_len)
            if package is None:
                logger.debug(f"Skipping profile element {element!r}")
                continue
            packages.add(package)
        return packages

    async def from_env(self) -> Set[InstalledPackage]:
        """
        Packages installed with ``nix-env``.

        ``nix-env`` does not report attribute paths, so the attribute of each
        result is the package's pname and its version is taken as reported.
        """
        try:
            output = await self.commands.run_env_query()
        except CommandError as e:
            logger.debug(f"nix-env query failed: {e}")
            return set()

        try:
            data = json.loads(output)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Unparsable nix-env output: {e}")
            return set()
        if not isinstance(data, dict):
            return set()

        packages: Set[InstalledPackage] = set()
        for entry in data.values():
            if not isinstance(entry, dict):
                continue
            pname, version = entry.get("pname"), entry.get("version")
            if not isinstance(pname, str) or not isinstance(version, str):
                continue
            packages.add(InstalledPackage(attribute=pname, origin=InstallOrigin.LEGACY_ENV, version=version))
        return packages

    async def collect(
        self,
        config_paths: Optional[Iterable[Path]] = None,
        include_profile: bool = True,
        include_env: bool = True,
    ) -> Set[InstalledPackage]:
        """Union of all enabled mechanisms."""
        packages = await self.from_config(config_paths)
        if include_profile:
            packages |= await self.from_profile()
        if include_env:
            packages |= await self.from_env()
        logger.debug(f"Found {len(packages)} installed packages")
        return packages
