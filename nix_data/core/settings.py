"""
Engine settings.

Every component receives a :class:`Settings` value in its constructor; nothing
reads the environment behind the caller's back. :func:`load_settings` builds
one from defaults, an optional YAML file and environment overrides.

Priority (highest first):
1. Environment variables (``NIX_DATA_CACHE_DIR``, ``NIX_DATA_PROFILE_MANIFEST``)
2. YAML file given explicitly or via ``NIX_DATA_SETTINGS``
3. Built-in defaults (``~/.cache/nix-data``)
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from nix_data.domain.errors import NixDataError

logger = logging.getLogger(__name__)

CACHE_DIR_ENV_VAR = "NIX_DATA_CACHE_DIR"
PROFILE_MANIFEST_ENV_VAR = "NIX_DATA_PROFILE_MANIFEST"
SETTINGS_FILE_ENV_VAR = "NIX_DATA_SETTINGS"

DATABASE_MIRROR = "https://raw.githubusercontent.com/snowflakelinux/nix-data-db/main"
VERSION_DATA_MIRROR = "https://raw.githubusercontent.com/snowflakelinux/nixpkgs-version-data/main"
CHANNELS_URL = "https://channels.nixos.org"
RELEASES_URL = "https://releases.nixos.org"


def _default_cache_dir() -> Path:
    return Path.home() / ".cache" / "nix-data"


def _default_profile_manifest() -> Path:
    return Path.home() / ".nix-profile" / "manifest.json"


class Settings(BaseModel):
    """Locations, upstream URL templates and tuning knobs."""

    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Directory holding every stamp and data file.",
    )
    profile_manifest: Path = Field(
        default_factory=_default_profile_manifest,
        description="Manifest of the user's `nix profile`.",
    )
    system_config_files: List[Path] = Field(
        default_factory=lambda: [Path("/etc/nixos/configuration.nix")],
        description="NixOS configuration files declaring environment.systemPackages.",
    )

    # URL templates. Placeholders: {release_line}, {revision}, {version}, {channel}.
    revision_data_url: str = Field(
        default=VERSION_DATA_MIRROR + "/nixos-{release_line}/{revision}.json.br",
        description="Precomputed per-revision package list.",
    )
    release_database_url: str = Field(
        default=DATABASE_MIRROR + "/nixos-{release_line}/nixpkgs.db.br",
        description="Precomputed per-release-line package database.",
    )
    nonnixos_database_url: str = Field(default=DATABASE_MIRROR + "/nixpkgs-unstable/nixpkgs.db.br")
    nonnixos_version_url: str = Field(default=DATABASE_MIRROR + "/nixpkgs-unstable/nixpkgs.ver")
    legacy_packages_url: str = Field(
        default=RELEASES_URL + "/nixos/{release_line}/nixos-{version}/packages.json.br",
    )
    channel_url: str = Field(default=CHANNELS_URL + "/{channel}")
    channel_packages_url: str = Field(default=CHANNELS_URL + "/{channel}/packages.json.br")
    channel_options_url: str = Field(default=CHANNELS_URL + "/{channel}/options.json.br")
    search_flake: str = Field(
        default="nixpkgs",
        description="Flake reference searched when no precomputed data is available.",
    )

    unreleased_lines: List[str] = Field(
        default_factory=list,
        description="Release numbers that have no published channel yet and map to unstable.",
    )
    batch_size: int = Field(default=10_000, ge=1, description="Rows per bulk insert statement.")
    http_timeout: Optional[float] = Field(
        default=None,
        description="Per-request timeout in seconds. None disables the timeout.",
    )
    store_hash_prefix_len: int = Field(
        default=44,
        description="Length of '/nix/store/<hash>-' stripped from store paths.",
    )

    @field_validator("cache_dir", "profile_manifest", mode="after")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return value.expanduser()

    def ensure_cache_dir(self) -> Path:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        return self.cache_dir


class SettingsError(NixDataError):
    """The settings file could not be read or did not validate."""


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise SettingsError(f"Failed to read settings file {path}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise SettingsError(f"Settings file {path} must contain a mapping")
    return raw


def load_settings(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build settings from defaults, an optional YAML file and the environment.

    A missing settings file named by ``NIX_DATA_SETTINGS`` is logged and ignored;
    a missing file passed explicitly is an error.
    """
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    if path is not None:
        if not path.exists():
            raise SettingsError(f"Settings file not found: {path}")
        values.update(_read_yaml(path))
    elif env.get(SETTINGS_FILE_ENV_VAR):
        env_path = Path(env[SETTINGS_FILE_ENV_VAR]).expanduser()
        if env_path.exists():
            values.update(_read_yaml(env_path))
        else:
            logger.warning(f"Settings file {env_path} from {SETTINGS_FILE_ENV_VAR} does not exist")

    if env.get(CACHE_DIR_ENV_VAR):
        values["cache_dir"] = Path(env[CACHE_DIR_ENV_VAR]).expanduser()
    if env.get(PROFILE_MANIFEST_ENV_VAR):
        values["profile_manifest"] = Path(env[PROFILE_MANIFEST_ENV_VAR]).expanduser()

    try:
        settings = Settings(**values)
    except ValidationError as e:
        raise SettingsError(f"Invalid settings: {e}") from e

    logger.debug(f"Using cache directory {settings.cache_dir}")
    return settings
