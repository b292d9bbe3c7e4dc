"""
Error taxonomy for the metadata cache and reconciliation engine.

Only conditions that abort a whole operation are exceptions. A single package
missing from a snapshot is not an error: lookups return None and reconciliation
omits the package from its output.
"""
from __future__ import annotations

from typing import Optional


class NixDataError(Exception):
    """Base class for every error raised by nix_data."""


class ProbeError(NixDataError):
    """The current system or upstream version could not be determined."""


class FetchError(NixDataError):
    """No configured source could be fetched and no cached snapshot exists."""


class DecodeError(NixDataError):
    """A payload did not match the shape its source descriptor promised."""


class StoreError(NixDataError):
    """Filesystem or SQLite failure while writing or reading a snapshot."""


class CommandError(NixDataError):
    """An external program exited unsuccessfully or could not be started."""

    def __init__(self, argv: list[str], returncode: Optional[int], stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        if returncode is None:
            message = f"Could not run {argv[0]!r}: {stderr}".rstrip(": ")
        else:
            message = f"{' '.join(argv)} exited with status {returncode}"
            if stderr:
                message = f"{message}: {stderr.strip()}"
        super().__init__(message)
