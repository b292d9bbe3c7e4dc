"""
Point lookups against a cached package snapshot.
"""
from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from nix_data.domain.errors import StoreError
from nix_data.domain.meta_values import MetaValue
from nix_data.domain.models import PackageMeta, PackageRecord

logger = logging.getLogger(__name__)


def read_only_uri(path: Path) -> str:
    """SQLite URI opening ``path`` read-only, with reserved characters percent-encoded."""
    return path.resolve().as_uri() + "?mode=ro"


# Columns added by this package's writer; precomputed dumps may lack them.
OPTIONAL_META_COLUMNS = ("license", "homepage")


def meta_join_columns(conn: sqlite3.Connection) -> str:
    """SELECT list for ``pkgs p LEFT JOIN meta m``, reading absent optional columns as NULL."""
    present = {row[1] for row in conn.execute("PRAGMA table_info(meta)")}
    optional = ", ".join(
        f"m.{column}" if column in present else f"NULL AS {column}" for column in OPTIONAL_META_COLUMNS
    )
    return (
        "p.attribute, p.system, p.pname, p.version, "
        "m.attribute AS meta_attribute, m.broken, m.insecure, "
        f"m.unsupported, m.unfree, m.description, m.longdescription, {optional}"
    )


def meta_from_row(row: sqlite3.Row) -> PackageMeta:
    return PackageMeta(
        broken=bool(row["broken"]),
        insecure=bool(row["insecure"]),
        unsupported=bool(row["unsupported"]),
        unfree=bool(row["unfree"]),
        description=row["description"],
        long_description=row["longdescription"],
        license=MetaValue.decode(row["license"]),
        homepage=MetaValue.decode(row["homepage"]),
    )


class PackageDatabase(ABC):
    """
    Read access to one snapshot, keyed by attribute path.

    A missing attribute is never an error: lookups return None.
    """

    @abstractmethod
    def get_package(self, attribute: str) -> Optional[PackageRecord]:
        """Package row for an attribute, including metadata when the snapshot has it."""
        pass

    @abstractmethod
    def attributes(self) -> List[str]:
        """Every attribute in the snapshot."""
        pass

    def get_meta(self, attribute: str) -> Optional[PackageMeta]:
        record = self.get_package(attribute)
        return record.meta if record else None

    def get_pname(self, attribute: str) -> Optional[str]:
        record = self.get_package(attribute)
        return record.pname if record else None

    def get_version(self, attribute: str) -> Optional[str]:
        record = self.get_package(attribute)
        return record.version if record else None

    def contains(self, attribute: str) -> bool:
        return self.get_package(attribute) is not None

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class SqlitePackageDatabase(PackageDatabase):
    """Reads the ``pkgs``/``meta`` schema written by the database builder."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._has_meta: Optional[bool] = None
        self._meta_columns = ""

    def connect(self) -> sqlite3.Connection:
        """Open a read-only connection to the snapshot."""
        if self.conn is None:
            if not self.db_path.exists():
                logger.error(f"Package database not found: {self.db_path}")
                raise StoreError(f"Package database not found: {self.db_path}")
            try:
                self.conn = sqlite3.connect(read_only_uri(self.db_path), uri=True)
                self.conn.row_factory = sqlite3.Row
                tables = {
                    row["name"]
                    for row in self.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
                }
            except sqlite3.Error as e:
                self.close()
                raise StoreError(f"Cannot open package database {self.db_path}: {e}") from e
            if "pkgs" not in tables:
                self.close()
                raise StoreError(f"Package database {self.db_path} has no pkgs table")
            self._has_meta = "meta" in tables
            if self._has_meta:
                try:
                    self._meta_columns = meta_join_columns(self.conn)
                except sqlite3.Error as e:
                    self.close()
                    raise StoreError(f"Cannot read meta schema of {self.db_path}: {e}") from e
            logger.debug(f"Opened package database {self.db_path} (meta={self._has_meta})")
        return self.conn

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

    @property
    def has_meta(self) -> bool:
        self.connect()
        return bool(self._has_meta)

    def get_package(self, attribute: str) -> Optional[PackageRecord]:
        conn = self.connect()
        try:
            if self._has_meta:
                row = conn.execute(
                    f"""
                    SELECT {self._meta_columns}
                    FROM pkgs p
                    LEFT JOIN meta m ON m.attribute = p.attribute
                    WHERE p.attribute = ?
                    """,
                    (attribute,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT attribute, system, pname, version FROM pkgs WHERE attribute = ?",
                    (attribute,),
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Database error querying {attribute}: {e}", exc_info=True)
            raise StoreError(f"Failed to query package {attribute}: {e}") from e

        if row is None:
            return None

        meta = None
        if self._has_meta and row["meta_attribute"] is not None:
            meta = meta_from_row(row)
        return PackageRecord(
            attribute=row["attribute"],
            pname=row["pname"] or "",
            version=row["version"] or "",
            system=row["system"],
            meta=meta,
        )

    def attributes(self) -> List[str]:
        conn = self.connect()
        try:
            return [row[0] for row in conn.execute("SELECT attribute FROM pkgs ORDER BY attribute")]
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list packages: {e}") from e

    def __enter__(self):
        self.connect()
        return self
