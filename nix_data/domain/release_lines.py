"""
Mapping from version tokens to release lines.

A version token is what ``nixos-version`` reports ("24.05.1234.abcdef",
"24.11pre123456.abcdef", ...), a bare release ("24.05"), the literal
"unstable", or a revision hash. Upstream data is published per release line:
either a numbered release ("24.05") or the rolling "unstable" line.

Numbered releases that exist as version strings before their branch-off (and so
have no published channel yet) are listed explicitly in ``unreleased`` instead
of being special-cased inline.
"""
from __future__ import annotations

import re
from typing import FrozenSet, Iterable, Optional

UNSTABLE = "unstable"

# Markers that follow the "NN.MM" release number in rolling/pre-release builds.
PRE_RELEASE_MARKERS = ("pre", "beta", "rc")

_RELEASE_RE = re.compile(r"^(?P<release>\d{2}\.\d{2})(?P<rest>.*)$")
_REVISION_RE = re.compile(r"^[0-9a-f]{7,40}$")


class ReleaseLineTable:
    """Derives the release line a version token belongs to."""

    def __init__(self, unreleased: Optional[Iterable[str]] = None):
        self.unreleased: FrozenSet[str] = frozenset(unreleased or ())

    def release_number(self, token: str) -> Optional[str]:
        """The "NN.MM" prefix of a token, or None when it has none."""
        match = _RELEASE_RE.match(token.strip())
        return match.group("release") if match else None

    def is_pre_release(self, token: str) -> bool:
        token = token.strip()
        if token == UNSTABLE or _REVISION_RE.match(token):
            return True
        match = _RELEASE_RE.match(token)
        if not match:
            return False
        rest = match.group("rest").lower()
        return any(rest.startswith(marker) for marker in PRE_RELEASE_MARKERS)

    def release_line(self, token: str) -> str:
        """
        Release line for a version token.

        Pre-release/rolling tokens, revision hashes and releases listed as
        unreleased map to "unstable"; any other token with a release number maps
        to that number. Tokens without a recognisable release number are treated
        as rolling.
        """
        if self.is_pre_release(token):
            return UNSTABLE
        release = self.release_number(token)
        if release is None or release in self.unreleased:
            return UNSTABLE
        return release
