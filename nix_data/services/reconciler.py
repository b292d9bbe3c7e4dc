"""
Compare installed packages against a package snapshot.

Two questions are answered:

* which version of each installed package the snapshot offers
* which installed packages would no longer be usable after an upgrade, and why
"""
from __future__ import annotations

import json
import logging
from typing import Dict, Iterable, Optional, Set

from nix_data.domain.errors import CommandError
from nix_data.domain.models import (
    BROKEN_REASON,
    INSECURE_REASON,
    NOT_FOUND_REASON,
    InstalledPackage,
    InstallOrigin,
    UnavailabilityReport,
)
from nix_data.services.commands import NixCommands
from nix_data.storage.package_db import PackageDatabase

logger = logging.getLogger(__name__)

ALIAS_NAMES_EXPRESSION = (
    "builtins.attrNames "
    "(import <nixpkgs/pkgs/top-level/aliases.nix> (import <nixpkgs/lib>) (import <nixpkgs> {}) {})"
)
ALIAS_CHECK_EXPRESSION = "(import <nixpkgs> {{}}).{attribute}.name"
ERROR_PREFIX = "error: "


def version_from_installed_name(installed_name: str, pname: str) -> Optional[str]:
    """
    ``firefox-128.0`` with pname ``firefox`` -> ``128.0``.

    Only the leading ``<pname>-`` is removed; None when the name does not start
    with it.
    """
    prefix = f"{pname}-"
    if not installed_name.startswith(prefix):
        return None
    return installed_name[len(prefix):]


def evaluation_error_text(stderr: str) -> str:
    """Human readable message of a failed evaluation, without the ``error: `` prefix."""
    lines = [line.strip() for line in stderr.strip().splitlines() if line.strip()]
    if not lines:
        return "evaluation failed"
    # Newer evaluators print a trace; the final "error:" line holds the message.
    messages = [line for line in lines if line.startswith(ERROR_PREFIX)]
    message = messages[-1] if messages else lines[0]
    if message.startswith(ERROR_PREFIX):
        message = message[len(ERROR_PREFIX):]
    return message.strip()


class Reconciler:
    """Maps installed packages onto a snapshot."""

    def __init__(self, commands: NixCommands):
        self.commands = commands

    def versions_of(self, installed: Iterable[InstalledPackage], db: PackageDatabase) -> Dict[str, str]:
        """
        Snapshot version of every installed package, keyed by attribute.

        Packages the snapshot cannot resolve are omitted.
        """
        versions: Dict[str, str] = {}
        for package in installed:
            version = self._version_of(package, db)
            if version is None:
                logger.debug(f"No version for installed package {package.attribute}")
                continue
            versions[package.attribute] = version
        return versions

    def _version_of(self, package: InstalledPackage, db: PackageDatabase) -> Optional[str]:
        if package.origin is InstallOrigin.PROFILE:
            if not package.installed_name:
                return None
            pname = db.get_pname(package.attribute)
            if pname is None:
                return None
            return version_from_installed_name(package.installed_name, pname)
        if package.origin is InstallOrigin.LEGACY_ENV:
            return package.version
        return db.get_version(package.attribute)

    async def alias_names(self) -> Set[str]:
        """Attributes defined as aliases by the package collection."""
        try:
            result = await self.commands.run_eval(ALIAS_NAMES_EXPRESSION, json_output=True)
        except CommandError as e:
            logger.warning(f"Could not evaluate alias names: {e}")
            return set()
        if not result.ok:
            logger.warning(f"Could not evaluate alias names: {evaluation_error_text(result.stderr)}")
            return set()
        try:
            names = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            logger.warning(f"Unparsable alias list: {e}")
            return set()
        return {name for name in names if isinstance(name, str)} if isinstance(names, list) else set()

    async def _dead_alias_reason(self, attribute: str) -> Optional[str]:
        try:
            result = await self.commands.run_eval(ALIAS_CHECK_EXPRESSION.format(attribute=attribute))
        except CommandError as e:
            logger.warning(f"Could not evaluate alias {attribute}: {e}")
            return None
        if result.ok:
            return None
        return evaluation_error_text(result.stderr)

    async def unavailable(self, installed: Iterable[InstalledPackage], db: PackageDatabase) -> UnavailabilityReport:
        """
        Installed attributes that are missing, broken or insecure in ``db``.

        An alias whose evaluation fails reports the evaluator's message. Broken
        takes precedence over insecure. Usable packages are not listed.
        """
        attributes = sorted({package.attribute for package in installed})
        report: UnavailabilityReport = {}

        aliases = await self.alias_names()
        for attribute in attributes:
            if attribute not in aliases:
                continue
            reason = await self._dead_alias_reason(attribute)
            if reason is not None:
                report[attribute] = reason

        for attribute in attributes:
            if attribute in report:
                continue
            record = db.get_package(attribute)
            if record is None:
                report[attribute] = NOT_FOUND_REASON
            elif record.meta is not None and record.meta.broken:
                report[attribute] = BROKEN_REASON
            elif record.meta is not None and record.meta.insecure:
                report[attribute] = INSECURE_REASON

        logger.info(f"{len(report)} of {len(attributes)} installed packages would be unavailable")
        return report
