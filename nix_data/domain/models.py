"""
Pydantic models for the package metadata cache.

This module defines the data exchanged between the engine components:
- Snapshot kinds and the source descriptors used to fetch them
- Package records and their optional safety metadata
- Installed packages as reported by the different installation mechanisms
- Reconciliation results
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from nix_data.domain.meta_values import MetaValue


# Opaque identifier of an upstream snapshot; compared for equality only.
VersionToken = str

# attribute -> human readable reason
UnavailabilityReport = Dict[str, str]

NOT_FOUND_REASON = "package not found in newer version"
BROKEN_REASON = "package is marked as broken"
INSECURE_REASON = "package is marked as insecure"


# ---------------------------------------------------------------------------
# Snapshot kinds
# ---------------------------------------------------------------------------


class SnapshotKind(str, Enum):
    """
    Kinds of cached snapshot. Each kind owns a disjoint stamp/data file pair
    under the cache directory, so different kinds can refresh concurrently.
    """

    LEGACY = "legacypkgs"
    FLAKE = "flakespkgs"
    NIXOS = "nixospkgs"
    PROFILE = "profilepkgs"
    NONNIXOS = "nonnixospkgs"
    OPTIONS = "nixosoptions"

    @property
    def data_suffix(self) -> str:
        return ".json" if self is SnapshotKind.OPTIONS else ".db"


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class PayloadFormat(str, Enum):
    RELATIONAL_DUMP = "relational-dump"
    PACKAGE_LIST_JSON = "package-list-json"
    SEARCH_JSON = "search-json"
    OPTIONS_JSON = "options-json"


class RecordShape(str, Enum):
    """Upstream JSON shapes understood by the database builder."""

    LEGACY = "legacy"
    FLAKE = "flake"
    NIXOS = "nixos"


Transport = Literal["http", "command"]
Compression = Literal["none", "brotli"]


class SourceDescriptor(BaseModel):
    """
    One upstream location to try when refreshing a snapshot.

    For ``http`` sources ``location`` is a URL; for ``command`` sources it is
    the flake reference handed to the package search program.
    """

    model_config = ConfigDict(frozen=True)

    location: str = Field(description="URL or flake reference.")
    transport: Transport = Field(default="http")
    payload: PayloadFormat = Field(default=PayloadFormat.PACKAGE_LIST_JSON)
    compression: Compression = Field(default="none")
    shape: RecordShape = Field(
        default=RecordShape.LEGACY,
        description="How JSON payloads are mapped onto package records.",
    )
    label: str = Field(default="", description="Short description used in log messages.")

    def describe(self) -> str:
        return self.label or self.location


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------


class PackageMeta(BaseModel):
    """
    Safety and descriptive metadata, only present in the full NixOS shape.

    Snapshots store ``license`` joined to one string and ``homepage`` as its
    first URL, so both read back as single values. ``platforms`` and
    ``maintainers`` exist only on freshly decoded records.
    """

    broken: bool = False
    insecure: bool = False
    unsupported: bool = False
    unfree: bool = False
    description: Optional[str] = None
    long_description: Optional[str] = None
    license: MetaValue = Field(default_factory=MetaValue)
    platforms: MetaValue = Field(default_factory=MetaValue)
    maintainers: MetaValue = Field(default_factory=MetaValue)
    homepage: MetaValue = Field(default_factory=MetaValue)


class PackageRecord(BaseModel):
    """A single package of a snapshot, keyed by its attribute path."""

    attribute: str = Field(description="Dotted attribute path, unique within a snapshot.")
    pname: str
    version: str
    system: Optional[str] = None
    meta: Optional[PackageMeta] = None


class CacheSnapshot(BaseModel):
    """A snapshot currently on disk. Its fetch time is the data file mtime."""

    kind: SnapshotKind
    version: Optional[VersionToken] = Field(default=None, description="None when the data file has no stamp.")
    data_path: Path

    @property
    def fetched_at(self) -> float:
        return self.data_path.stat().st_mtime


# ---------------------------------------------------------------------------
# Installed packages
# ---------------------------------------------------------------------------


class InstallOrigin(str, Enum):
    DECLARATIVE_CONFIG = "declarative-config"
    PROFILE = "profile"
    LEGACY_ENV = "legacy-env"


class InstalledPackage(BaseModel):
    """
    A package the user has installed.

    ``installed_name`` is the store path name (``<pname>-<version>``) recovered
    from profile manifests. Legacy env entries are keyed by pname and carry
    their version directly in ``version``.
    """

    model_config = ConfigDict(frozen=True)

    attribute: str
    origin: InstallOrigin
    installed_name: Optional[str] = None
    original_url: Optional[str] = None
    version: Optional[str] = None
