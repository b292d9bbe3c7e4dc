"""
Capability interface for the external Nix programs the engine relies on.

All stdout/stderr scraping of ``nixos-version``, ``nix registry``, ``nix search``,
``nix-env``, ``nix-editor`` and ``nix-instantiate`` goes through
:class:`NixCommands`, so probes, collectors and the reconciler can be tested
against an in-memory fake without invoking real programs.

Every invocation is read-only: metadata queries and evaluations, never builds.
"""
from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import BaseModel

from nix_data.domain.errors import CommandError

logger = logging.getLogger(__name__)

EXPERIMENTAL_FEATURES = ["--extra-experimental-features", "nix-command flakes"]
SYSTEM_PACKAGES_OPTION = "environment.systemPackages"


class EvalResult(BaseModel):
    """Outcome of an evaluation; a non-zero ``returncode`` is not raised."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class NixCommands(ABC):
    """
    Abstract access to external Nix programs.
    """

    @abstractmethod
    async def run_version_probe(self, json_output: bool = True) -> str:
        """Output of ``nixos-version`` (``--json`` when requested)."""
        pass

    @abstractmethod
    async def run_registry_list(self) -> str:
        """Output of ``nix registry list``."""
        pass

    @abstractmethod
    async def run_search(self, flake_ref: str) -> bytes:
        """JSON output of ``nix search`` over every package of ``flake_ref``."""
        pass

    @abstractmethod
    async def run_env_query(self) -> bytes:
        """JSON output of ``nix-env -q``."""
        pass

    @abstractmethod
    async def run_eval(self, expression: str, json_output: bool = False) -> EvalResult:
        """Evaluate a Nix expression. Failures are reported, not raised."""
        pass

    @abstractmethod
    async def read_config_array(self, path: Path, option: str = SYSTEM_PACKAGES_OPTION) -> List[str]:
        """Elements of a list-valued option declared in a configuration file."""
        pass


# ---------------------------------------------------------------------------
# Nix list parsing
# ---------------------------------------------------------------------------

_COMMENT_RE = re.compile(r"#[^\n]*|/\*.*?\*/", re.DOTALL)
_TOKEN_RE = re.compile(r'"(?:\\.|[^"\\])*"|[A-Za-z_][\w\'.-]*|[\[\]()]|\S')


def parse_nix_list(text: str) -> List[str]:
    """
    Extract the plain attribute references from a Nix list expression.

    Accepts ``with pkgs; [ firefox pkgs.hello ]`` style values. Elements that
    are not bare references (function applications in parentheses, strings,
    nested lists) are skipped.
    """
    text = _COMMENT_RE.sub(" ", text)
    start = text.find("[")
    if start == -1:
        return []

    items: List[str] = []
    depth = 0
    parens = 0
    for match in _TOKEN_RE.finditer(text, start):
        token = match.group(0)
        if token == "[":
            depth += 1
            continue
        if token == "]":
            depth -= 1
            if depth == 0:
                break
            continue
        if token == "(":
            parens += 1
            continue
        if token == ")":
            parens -= 1
            continue
        if depth == 1 and parens == 0 and (token[0].isalpha() or token[0] == "_"):
            items.append(token)
    return items


_WITH_RE = re.compile(r"\s*with\s+[A-Za-z_][\w'.-]*\s*;")
_OPENERS = ("[", "(", "{")
_CLOSERS = ("]", ")", "}")


def _option_value(text: str, start: int) -> str:
    """Return the value bound at ``start``, up to its ``;`` at nesting depth 0."""
    while True:
        prefix = _WITH_RE.match(text, start)
        if prefix is None:
            break
        start = prefix.end()
    depth = 0
    for match in _TOKEN_RE.finditer(text, start):
        token = match.group(0)
        if token in _OPENERS:
            depth += 1
        elif token in _CLOSERS:
            depth -= 1
        elif token == ";" and depth == 0:
            return text[start:match.start()]
    return text[start:]


def _is_list_literal(value: str) -> bool:
    tokens = [m.group(0) for m in _TOKEN_RE.finditer(value)]
    if not tokens or tokens[0] != "[":
        return False
    depth = 0
    for i, token in enumerate(tokens):
        if token in _OPENERS:
            depth += 1
        elif token in _CLOSERS:
            depth -= 1
            if depth == 0:
                return i == len(tokens) - 1
    return False


def extract_option_array(text: str, option: str) -> List[str]:
    """
    Find ``option = ...;`` in a configuration file and parse its list value.

    Only ``[ ... ]`` and ``with <x>; [ ... ]`` values are read; anything else
    (``lib.mkDefault``, concatenations, variables) yields an empty list.
    """
    text = _COMMENT_RE.sub(" ", text)
    match = re.search(re.escape(option) + r"\s*=", text)
    if not match:
        return []
    value = _option_value(text, match.end())
    if not _is_list_literal(value):
        logger.debug(f"{option} is not a list literal, ignoring")
        return []
    return parse_nix_list(value)


# ---------------------------------------------------------------------------
# Subprocess implementation
# ---------------------------------------------------------------------------


class SubprocessNixCommands(NixCommands):
    """Runs the real programs with asyncio subprocesses."""

    def __init__(self, nix: str = "nix", nix_editor: str = "nix-editor"):
        self.nix = nix
        self.nix_editor = nix_editor

    async def _communicate(self, argv: Sequence[str]) -> tuple[int, bytes, bytes]:
        logger.debug(f"Running {' '.join(argv)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandError(list(argv), None, str(e)) from e
        stdout, stderr = await proc.communicate()
        return proc.returncode, stdout, stderr

    async def _run(self, argv: Sequence[str]) -> bytes:
        returncode, stdout, stderr = await self._communicate(argv)
        if returncode != 0:
            raise CommandError(list(argv), returncode, stderr.decode("utf-8", "replace"))
        return stdout

    async def run_version_probe(self, json_output: bool = True) -> str:
        argv = ["nixos-version", "--json"] if json_output else ["nixos-version"]
        return (await self._run(argv)).decode("utf-8", "replace")

    async def run_registry_list(self) -> str:
        argv = [self.nix, *EXPERIMENTAL_FEATURES, "registry", "list"]
        return (await self._run(argv)).decode("utf-8", "replace")

    async def run_search(self, flake_ref: str) -> bytes:
        return await self._run([self.nix, *EXPERIMENTAL_FEATURES, "search", "--json", flake_ref, "^"])

    async def run_env_query(self) -> bytes:
        return await self._run(["nix-env", "-q", "--json"])

    async def run_eval(self, expression: str, json_output: bool = False) -> EvalResult:
        argv = ["nix-instantiate", "--eval", "--strict"]
        if json_output:
            argv.append("--json")
        argv.extend(["-E", expression])
        returncode, stdout, stderr = await self._communicate(argv)
        return EvalResult(
            returncode=returncode,
            stdout=stdout.decode("utf-8", "replace"),
            stderr=stderr.decode("utf-8", "replace"),
        )

    async def read_config_array(self, path: Path, option: str = SYSTEM_PACKAGES_OPTION) -> List[str]:
        try:
            output = await self._run([self.nix_editor, str(path), option])
        except CommandError as e:
            if e.returncode is not None:
                raise
            # nix-editor is not installed; read the file directly.
            logger.debug(f"{self.nix_editor} unavailable, parsing {path} directly")
            return extract_option_array(path.read_text(encoding="utf-8"), option)
        return parse_nix_list(output.decode("utf-8", "replace"))


def first_line(text: str) -> Optional[str]:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return None
