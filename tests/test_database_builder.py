"""
Tests for payload decoding and bulk loading (nix_data/services/database_builder.py).
"""

import json
import sqlite3
from pathlib import Path

import pytest

from nix_data.domain.errors import DecodeError
from nix_data.domain.models import PackageRecord, RecordShape
from nix_data.services.database_builder import DatabaseBuilder, decode_meta, search_key_to_attribute
from nix_data.storage.package_db import SqlitePackageDatabase

from conftest import sqlite_dump

NIXOS_PAYLOAD = {
    "firefox": {
        "pname": "firefox",
        "version": "128.0",
        "system": "x86_64-linux",
        "meta": {
            "description": "A web browser",
            "license": {"spdxId": "MPL-2.0", "free": True},
            "platforms": ["x86_64-linux", "aarch64-linux"],
            "homepage": "https://www.mozilla.org/firefox/",
        },
    },
    "openssl_1_1": {
        "pname": "openssl",
        "version": "1.1.1w",
        "system": "x86_64-linux",
        "meta": {"knownVulnerabilities": ["CVE-2023-0001"]},
    },
    "oldpkg": {
        "pname": "oldpkg",
        "version": "0.1",
        "system": "x86_64-linux",
        "meta": {"broken": True, "insecure": True},
    },
}


def load_into(tmp_path: Path, records, batch_size: int = 10_000) -> Path:
    path = tmp_path / "out.db"
    conn = sqlite3.connect(str(path))
    try:
        DatabaseBuilder(batch_size).load(conn, records)
    finally:
        conn.close()
    return path


class TestDecodeShapes:
    """Each upstream shape decodes into the same record model."""

    def test_legacy_shape(self):
        records = DatabaseBuilder().decode({"hello": {"pname": "hello", "version": "2.12.1"}}, RecordShape.LEGACY)
        assert records == [PackageRecord(attribute="hello", pname="hello", version="2.12.1")]

    def test_legacy_shape_wrapped_in_packages(self):
        data = {"version": 2, "packages": {"hello": {"pname": "hello", "version": "2.12.1", "meta": {}}}}
        [record] = DatabaseBuilder().decode(data, RecordShape.LEGACY)
        assert record.attribute == "hello"
        assert record.meta is None

    def test_flake_shape_strips_output_and_system(self):
        data = {
            "legacyPackages.x86_64-linux.hello": {"pname": "hello", "version": "2.12.1", "description": "x"},
            "legacyPackages.x86_64-linux.python3Packages.requests": {"pname": "python3.11-requests", "version": "2.31.0"},
        }
        records = DatabaseBuilder().decode_json(json.dumps(data).encode(), RecordShape.FLAKE)
        assert sorted(r.attribute for r in records) == ["hello", "python3Packages.requests"]

    def test_nixos_shape_carries_meta(self):
        records = {r.attribute: r for r in DatabaseBuilder().decode(NIXOS_PAYLOAD, RecordShape.NIXOS)}

        firefox = records["firefox"]
        assert firefox.system == "x86_64-linux"
        assert firefox.meta.description == "A web browser"
        assert firefox.meta.license.first() == "MPL-2.0"
        assert firefox.meta.platforms.kind == "list"
        assert not firefox.meta.broken
        assert records["openssl_1_1"].meta.insecure
        assert records["oldpkg"].meta.broken

    def test_malformed_entries_are_skipped(self):
        data = {
            "good": {"pname": "good", "version": "1"},
            "noversion": {"pname": "noversion"},
            "notadict": "garbage",
        }
        records = DatabaseBuilder().decode(data, RecordShape.LEGACY)
        assert [r.attribute for r in records] == ["good"]

    def test_nothing_usable_raises(self):
        with pytest.raises(DecodeError):
            DatabaseBuilder().decode({"bad": {"pname": "bad"}}, RecordShape.LEGACY)

    def test_invalid_json_raises(self):
        with pytest.raises(DecodeError):
            DatabaseBuilder().decode_json(b"{not json", RecordShape.LEGACY)

    def test_non_object_raises(self):
        with pytest.raises(DecodeError):
            DatabaseBuilder().decode([1, 2, 3], RecordShape.LEGACY)

    def test_empty_payload_is_empty(self):
        assert DatabaseBuilder().decode({}, RecordShape.LEGACY) == []


class TestDecodeMeta:
    def test_unfree_from_license(self):
        meta = decode_meta({"license": [{"spdxId": "MIT", "free": True}, {"fullName": "Unfree", "free": False}]})
        assert meta.unfree
        assert meta.license.values() == ["MIT", "Unfree"]

    def test_malformed_optional_field_does_not_fail(self):
        meta = decode_meta({"description": ["not", "text"], "homepage": 42, "maintainers": [{"x": 1}]})
        assert meta.description is None
        assert meta.homepage.first() == "42"
        assert meta.maintainers.is_empty

    def test_non_object_meta(self):
        assert decode_meta("broken") is None

    def test_search_key_to_attribute(self):
        assert search_key_to_attribute("legacyPackages.x86_64-linux.hello") == "hello"
        assert search_key_to_attribute("packages.x86_64-linux") is None


class TestLoad:
    """Records written by load() read back unchanged."""

    def test_nixos_records_round_trip(self, tmp_path):
        records = DatabaseBuilder().decode(NIXOS_PAYLOAD, RecordShape.NIXOS)
        path = load_into(tmp_path, records, batch_size=2)

        with SqlitePackageDatabase(path) as db:
            assert db.has_meta
            assert db.attributes() == ["firefox", "oldpkg", "openssl_1_1"]
            firefox = db.get_package("firefox")
            assert (firefox.pname, firefox.version, firefox.system) == ("firefox", "128.0", "x86_64-linux")
            assert firefox.meta.description == "A web browser"
            assert firefox.meta.license.first() == "MPL-2.0"
            assert firefox.meta.homepage.first() == "https://www.mozilla.org/firefox/"
            assert db.get_meta("oldpkg").broken
            assert db.get_meta("openssl_1_1").insecure
            assert db.get_package("missing") is None

    def test_legacy_records_have_no_meta_table(self, tmp_path):
        records = DatabaseBuilder().decode({"hello": {"pname": "hello", "version": "2.12.1"}}, RecordShape.LEGACY)
        path = load_into(tmp_path, records)

        with SqlitePackageDatabase(path) as db:
            assert not db.has_meta
            assert db.get_version("hello") == "2.12.1"
            assert db.get_meta("hello") is None

    def test_license_and_homepage_are_flattened(self):
        meta = decode_meta({
            "license": [{"spdxId": "MIT"}, {"spdxId": "Apache-2.0"}],
            "homepage": ["https://a.example", "https://b.example"],
        })
        record = PackageRecord(attribute="dual", pname="dual", version="1", meta=meta)
        [(_, meta_rows)] = list(DatabaseBuilder().rows([record]))

        assert meta_rows[0][-2:] == ("MIT, Apache-2.0", "https://a.example")

    def test_rows_are_batched(self):
        records = [PackageRecord(attribute=f"pkg{i}", pname=f"pkg{i}", version="1") for i in range(5)]
        batches = list(DatabaseBuilder(batch_size=2).rows(records))
        assert [len(pkgs) for pkgs, _ in batches] == [2, 2, 1]
        assert all(meta == [] for _, meta in batches)


class TestRelationalDump:
    def test_reads_dump_with_meta(self, tmp_path):
        path = tmp_path / "dump.db"
        sqlite_dump(
            path,
            {"hello": {"pname": "hello", "version": "2.12.1"}, "old": {"pname": "old", "version": "1"}},
            meta={"old": {"broken": True}},
        )
        records = {r.attribute: r for r in DatabaseBuilder().decode_relational_dump(path)}

        assert records["hello"].version == "2.12.1"
        assert records["hello"].meta is None
        assert records["old"].meta.broken
        assert records["old"].meta.license.is_empty

    def test_reads_dump_from_directory_with_uri_characters(self, tmp_path):
        directory = tmp_path / "cache#1?"
        directory.mkdir()
        path = directory / "dump.db"
        sqlite_dump(path, {"hello": {"pname": "hello", "version": "2.12.1"}})

        [record] = DatabaseBuilder().decode_relational_dump(path)
        assert record.version == "2.12.1"

    def test_rejects_non_sqlite_file(self, tmp_path):
        path = tmp_path / "dump.db"
        path.write_text("<html>404</html>")
        with pytest.raises(DecodeError):
            DatabaseBuilder().decode_relational_dump(path)

    def test_rejects_foreign_schema(self, tmp_path):
        path = tmp_path / "dump.db"
        conn = sqlite3.connect(str(path))
        with conn:
            conn.execute("CREATE TABLE other (x TEXT)")
        conn.close()
        with pytest.raises(DecodeError):
            DatabaseBuilder().decode_relational_dump(path)
