from pathlib import Path
from typing import Optional

import httpx

from nix_data.core.settings import Settings, load_settings
from nix_data.services.commands import NixCommands, SubprocessNixCommands
from nix_data.services.database_builder import DatabaseBuilder
from nix_data.services.fetcher import Fetcher
from nix_data.services.installed import InstalledSetCollector
from nix_data.services.reconciler import Reconciler
from nix_data.services.snapshots import SnapshotService
from nix_data.services.source_resolver import SourceResolver
from nix_data.services.version_probe import VersionProbe

_settings: Optional[Settings] = None
_commands: Optional[NixCommands] = None
_snapshot_service: Optional[SnapshotService] = None


def get_settings(path: Optional[Path] = None) -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings(path)
    return _settings


def get_commands() -> NixCommands:
    global _commands
    if _commands is None:
        _commands = SubprocessNixCommands()
    return _commands


def build_snapshot_service(
    settings: Settings,
    commands: NixCommands,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SnapshotService:
    """Wire every component from one settings value."""
    builder = DatabaseBuilder(settings.batch_size)
    return SnapshotService(
        settings=settings,
        probe=VersionProbe(commands, settings, transport=transport),
        resolver=SourceResolver(settings),
        fetcher=Fetcher(commands, settings, builder=builder, transport=transport),
        collector=InstalledSetCollector(commands, settings),
        reconciler=Reconciler(commands),
    )


def get_snapshot_service() -> SnapshotService:
    global _snapshot_service
    if _snapshot_service is None:
        _snapshot_service = build_snapshot_service(get_settings(), get_commands())
    return _snapshot_service


def reset() -> None:
    """Forget the shared instances, e.g. after the environment changed."""
    global _settings, _commands, _snapshot_service
    _settings = None
    _commands = None
    _snapshot_service = None
