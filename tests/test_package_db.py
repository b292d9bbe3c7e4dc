"""
Tests for snapshot lookups (nix_data/storage/package_db.py).
"""

import sqlite3

import pytest

from nix_data.domain.errors import StoreError
from nix_data.storage.package_db import SqlitePackageDatabase

from conftest import sqlite_dump


class TestSqlitePackageDatabase:
    def test_missing_file(self, tmp_path):
        with pytest.raises(StoreError):
            SqlitePackageDatabase(tmp_path / "missing.db").connect()

    def test_missing_pkgs_table(self, tmp_path):
        path = tmp_path / "other.db"
        conn = sqlite3.connect(str(path))
        with conn:
            conn.execute("CREATE TABLE something (x TEXT)")
        conn.close()

        db = SqlitePackageDatabase(path)
        with pytest.raises(StoreError):
            db.connect()
        assert db.conn is None

    def test_lookups(self, tmp_path):
        path = tmp_path / "pkgs.db"
        conn = sqlite3.connect(str(path))
        with conn:
            conn.execute("CREATE TABLE pkgs (attribute TEXT PRIMARY KEY NOT NULL, system TEXT, pname TEXT, version TEXT)")
            conn.execute("INSERT INTO pkgs VALUES ('hello', NULL, 'hello', '2.12.1')")
        conn.close()

        with SqlitePackageDatabase(path) as db:
            assert db.contains("hello")
            assert not db.contains("missing")
            assert db.get_pname("hello") == "hello"
            assert db.get_version("missing") is None
            assert db.get_meta("hello") is None
        assert db.conn is None

    def test_meta_without_license_columns(self, tmp_path):
        """Precomputed dumps carry the seven-column meta table."""
        path = tmp_path / "dump.db"
        sqlite_dump(path, {"old": {"pname": "old", "version": "1"}}, meta={"old": {"broken": True}})

        with SqlitePackageDatabase(path) as db:
            meta = db.get_meta("old")
            assert meta.broken
            assert meta.license.is_empty
            assert meta.homepage.is_empty
