"""
Shared fixtures: an in-memory NixCommands, settings rooted in tmp_path and
helpers for building brotli payloads and mock HTTP transports.
"""
import json
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import brotli
import httpx
import pytest

from nix_data.core.settings import Settings
from nix_data.domain.errors import CommandError
from nix_data.services.commands import SYSTEM_PACKAGES_OPTION, EvalResult, NixCommands


Answer = Union[str, bytes, Exception]


def _answer(value: Answer):
    if isinstance(value, Exception):
        raise value
    return value


class FakeNixCommands(NixCommands):
    """
    Scripted stand-in for the external Nix programs.

    Every call is appended to ``calls`` so tests can assert which programs ran.
    Unset answers behave like a missing program.
    """

    def __init__(self):
        self.version_json: Answer = json.dumps({"nixosVersion": "24.05.1234.abcdef0"})
        self.version_plain: Answer = CommandError(["nixos-version"], None, "not found")
        self.registry: Answer = ""
        self.search_results: Dict[str, Answer] = {}
        self.env_output: Answer = CommandError(["nix-env", "-q", "--json"], None, "not found")
        self.evals: Dict[str, EvalResult] = {}
        self.config_arrays: Dict[Path, Answer] = {}
        self.calls: List[tuple] = []

    async def run_version_probe(self, json_output: bool = True) -> str:
        self.calls.append(("version", json_output))
        return _answer(self.version_json if json_output else self.version_plain)

    async def run_registry_list(self) -> str:
        self.calls.append(("registry",))
        return _answer(self.registry)

    async def run_search(self, flake_ref: str) -> bytes:
        self.calls.append(("search", flake_ref))
        if flake_ref not in self.search_results:
            raise CommandError(["nix", "search", "--json", flake_ref], 1, "error: cannot find flake")
        return _answer(self.search_results[flake_ref])

    async def run_env_query(self) -> bytes:
        self.calls.append(("env",))
        return _answer(self.env_output)

    async def run_eval(self, expression: str, json_output: bool = False) -> EvalResult:
        self.calls.append(("eval", expression, json_output))
        return self.evals.get(expression, EvalResult(returncode=1, stderr="error: undefined variable"))

    async def read_config_array(self, path: Path, option: str = SYSTEM_PACKAGES_OPTION) -> List[str]:
        self.calls.append(("config", path, option))
        if path not in self.config_arrays:
            raise CommandError(["nix-editor", str(path), option], 1, "cannot parse")
        return _answer(self.config_arrays[path])

    def search_calls(self) -> List[str]:
        return [call[1] for call in self.calls if call[0] == "search"]


@pytest.fixture
def fake_commands() -> FakeNixCommands:
    return FakeNixCommands()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every local path under tmp_path."""
    return Settings(
        cache_dir=tmp_path / "cache",
        profile_manifest=tmp_path / "profile" / "manifest.json",
        system_config_files=[tmp_path / "configuration.nix"],
    )


def br_json(data: Any) -> bytes:
    return brotli.compress(json.dumps(data).encode("utf-8"))


def sqlite_dump(path: Path, packages: Dict[str, Dict[str, Any]], meta: Optional[Dict[str, Dict[str, Any]]] = None) -> bytes:
    """Build a precomputed database file and return its brotli-compressed bytes."""
    conn = sqlite3.connect(str(path))
    with conn:
        conn.execute("CREATE TABLE pkgs (attribute TEXT PRIMARY KEY NOT NULL, system TEXT, pname TEXT, version TEXT)")
        for attribute, pkg in packages.items():
            conn.execute(
                "INSERT INTO pkgs VALUES (?, ?, ?, ?)",
                (attribute, pkg.get("system"), pkg["pname"], pkg["version"]),
            )
        if meta is not None:
            conn.execute(
                "CREATE TABLE meta (attribute TEXT PRIMARY KEY NOT NULL, broken INT, insecure INT, "
                "unsupported INT, unfree INT, description TEXT, longdescription TEXT)"
            )
            for attribute, m in meta.items():
                conn.execute(
                    "INSERT INTO meta VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (attribute, int(m.get("broken", False)), int(m.get("insecure", False)), 0, 0,
                     m.get("description"), None),
                )
    conn.close()
    return brotli.compress(path.read_bytes())


class Router:
    """Maps URLs to canned responses and records every request."""

    def __init__(self, routes: Optional[Dict[str, Callable[[httpx.Request], httpx.Response]]] = None):
        self.routes = dict(routes or {})
        self.requests: List[httpx.Request] = []

    def add(self, url: str, content: bytes = b"", status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> None:
        self.routes[url] = lambda request: httpx.Response(status_code, content=content, headers=headers)

    def add_handler(self, url: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[url] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(str(request.url))
        if handler is None:
            return httpx.Response(404)
        return handler(request)

    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def router() -> Router:
    return Router()


def offline(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Network is unreachable", request=request)


@pytest.fixture
def offline_transport() -> httpx.MockTransport:
    return httpx.MockTransport(offline)
