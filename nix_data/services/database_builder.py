"""
Normalise upstream snapshot payloads into package records and load them into
the relational schema.

Upstream data comes in several shapes:

* legacy channel lists: ``{attribute: {pname, version}}``
* ``nix search --json`` output: ``{"legacyPackages.<system>.<attribute>": {pname, version}}``
* full NixOS ``packages.json``: ``{attribute: {pname, version, system, meta: {...}}}``
* precomputed SQLite databases using the same schema as the local store

Only the full NixOS shape carries safety metadata; it is the only shape that
populates the ``meta`` table.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from nix_data.domain.errors import DecodeError
from nix_data.domain.meta_values import MetaValue
from nix_data.domain.models import PackageMeta, PackageRecord, RecordShape
from nix_data.storage.package_db import meta_from_row, meta_join_columns, read_only_uri

logger = logging.getLogger(__name__)

SQLITE_HEADER = b"SQLite format 3\x00"
DEFAULT_BATCH_SIZE = 10_000

PKGS_DDL = """
CREATE TABLE pkgs (
    attribute TEXT PRIMARY KEY NOT NULL,
    system    TEXT,
    pname     TEXT,
    version   TEXT
)
"""

META_DDL = """
CREATE TABLE meta (
    attribute       TEXT PRIMARY KEY NOT NULL REFERENCES pkgs(attribute),
    broken          INT,
    insecure        INT,
    unsupported     INT,
    unfree          INT,
    description     TEXT,
    longdescription TEXT,
    license         TEXT,
    homepage        TEXT
)
"""

INSERT_PKG = "INSERT OR REPLACE INTO pkgs (attribute, system, pname, version) VALUES (?, ?, ?, ?)"
INSERT_META = (
    "INSERT OR REPLACE INTO meta "
    "(attribute, broken, insecure, unsupported, unfree, description, longdescription, license, homepage) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
)

PkgRow = Tuple[str, Optional[str], str, str]
MetaRow = Tuple[str, int, int, int, int, Optional[str], Optional[str], Optional[str], Optional[str]]


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def search_key_to_attribute(key: str) -> Optional[str]:
    """
    Strip the flake output kind and system from a search result key.

    ``legacyPackages.x86_64-linux.hello`` -> ``hello``
    """
    parts = key.split(".")
    if len(parts) < 3:
        return None
    return ".".join(parts[2:])


def _unwrap_packages(data: Any) -> Dict[str, Any]:
    if isinstance(data, dict) and isinstance(data.get("packages"), dict):
        data = data["packages"]
    if not isinstance(data, dict):
        raise DecodeError(f"Expected a JSON object of packages, got {type(data).__name__}")
    return data


def _decode_license_unfree(license_value: Any) -> bool:
    licenses = license_value if isinstance(license_value, list) else [license_value]
    return any(isinstance(lic, dict) and lic.get("free") is False for lic in licenses)


def decode_meta(raw: Any) -> Optional[PackageMeta]:
    """
    Decode a ``meta`` attribute set.

    Optional fields with an unexpected shape are dropped instead of failing the
    record; a meta value that is not an object at all yields None.
    """
    if not isinstance(raw, dict):
        return None

    known_vulnerabilities = raw.get("knownVulnerabilities")
    try:
        return PackageMeta(
            broken=bool(raw.get("broken", False)),
            insecure=bool(raw.get("insecure", False)) or bool(known_vulnerabilities),
            unsupported=bool(raw.get("unsupported", False)),
            unfree=bool(raw.get("unfree", False)) or _decode_license_unfree(raw.get("license")),
            description=_text(raw.get("description")),
            long_description=_text(raw.get("longDescription")),
            license=MetaValue.decode(raw.get("license")),
            platforms=MetaValue.decode(raw.get("platforms")),
            maintainers=MetaValue.decode(raw.get("maintainers")),
            homepage=MetaValue.decode(raw.get("homepage")),
        )
    except ValidationError as e:
        logger.debug(f"Dropping malformed meta: {e}")
        return None


class DatabaseBuilder:
    """Decodes snapshots into records and bulk-loads them into SQLite."""

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE):
        self.batch_size = batch_size

    # ------------------------------------------------------------------
    # JSON shapes
    # ------------------------------------------------------------------

    def decode_json(self, payload: bytes | str, shape: RecordShape) -> List[PackageRecord]:
        """Parse a JSON payload and decode it according to ``shape``."""
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecodeError(f"Payload is not valid JSON: {e}") from e
        return self.decode(data, shape)

    def decode(self, data: Any, shape: RecordShape) -> List[PackageRecord]:
        """
        Decode already-parsed JSON into records.

        Duplicate attributes keep the last occurrence. Entries without a usable
        pname or version are skipped.
        """
        packages = _unwrap_packages(data)
        records: Dict[str, PackageRecord] = {}
        skipped = 0

        for key, entry in packages.items():
            if shape is RecordShape.FLAKE:
                attribute = search_key_to_attribute(key)
            else:
                attribute = key
            record = self._decode_entry(attribute, entry, shape) if attribute else None
            if record is None:
                skipped += 1
                continue
            records[record.attribute] = record

        if skipped:
            logger.warning(f"Skipped {skipped} malformed {shape.value} entries")
        if packages and not records:
            raise DecodeError(f"No usable package entries in {shape.value} payload")
        logger.debug(f"Decoded {len(records)} {shape.value} records")
        return list(records.values())

    def _decode_entry(self, attribute: str, entry: Any, shape: RecordShape) -> Optional[PackageRecord]:
        if not isinstance(entry, dict):
            return None
        pname = _text(entry.get("pname"))
        version = _text(entry.get("version"))
        if pname is None or version is None:
            return None

        system = None
        meta = None
        if shape is RecordShape.NIXOS:
            system = _text(entry.get("system"))
            meta = decode_meta(entry.get("meta"))
        return PackageRecord(attribute=attribute, pname=pname, version=version, system=system, meta=meta)

    # ------------------------------------------------------------------
    # Precomputed databases
    # ------------------------------------------------------------------

    def decode_relational_dump(self, path: Path) -> List[PackageRecord]:
        """Read records back out of a precomputed SQLite database."""
        try:
            with open(path, "rb") as f:
                header = f.read(len(SQLITE_HEADER))
        except OSError as e:
            raise DecodeError(f"Cannot read database dump {path}: {e}") from e
        if header != SQLITE_HEADER:
            raise DecodeError(f"{path} is not an SQLite database")

        try:
            conn = sqlite3.connect(read_only_uri(path), uri=True)
        except sqlite3.Error as e:
            raise DecodeError(f"Cannot open database dump {path}: {e}") from e

        try:
            conn.row_factory = sqlite3.Row
            tables = {row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
            if "pkgs" not in tables:
                raise DecodeError(f"Database dump {path} has no pkgs table")

            if "meta" in tables:
                query = f"""
                    SELECT {meta_join_columns(conn)}
                    FROM pkgs p
                    LEFT JOIN meta m ON m.attribute = p.attribute
                """
            else:
                query = "SELECT attribute, system, pname, version FROM pkgs"

            records: Dict[str, PackageRecord] = {}
            for row in conn.execute(query):
                record = self._record_from_row(row, with_meta="meta" in tables)
                if record is not None:
                    records[record.attribute] = record
        except sqlite3.Error as e:
            raise DecodeError(f"Unexpected schema in database dump {path}: {e}") from e
        finally:
            conn.close()

        logger.debug(f"Read {len(records)} records from database dump {path}")
        return list(records.values())

    def _record_from_row(self, row: sqlite3.Row, with_meta: bool) -> Optional[PackageRecord]:
        attribute, pname, version = row["attribute"], _text(row["pname"]), _text(row["version"])
        if not attribute or pname is None or version is None:
            return None
        meta = None
        if with_meta and row["meta_attribute"] is not None:
            meta = meta_from_row(row)
        return PackageRecord(attribute=attribute, pname=pname, version=version, system=row["system"], meta=meta)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def rows(self, records: Iterable[PackageRecord]) -> Iterator[Tuple[List[PkgRow], List[MetaRow]]]:
        """Yield ``(pkgs rows, meta rows)`` in batches of ``batch_size`` records."""
        pkg_rows: List[PkgRow] = []
        meta_rows: List[MetaRow] = []
        for record in records:
            pkg_rows.append((record.attribute, record.system, record.pname, record.version))
            if record.meta is not None:
                meta = record.meta
                meta_rows.append((
                    record.attribute,
                    int(meta.broken),
                    int(meta.insecure),
                    int(meta.unsupported),
                    int(meta.unfree),
                    meta.description,
                    meta.long_description,
                    meta.license.joined(),
                    meta.homepage.first(),
                ))
            if len(pkg_rows) >= self.batch_size:
                yield pkg_rows, meta_rows
                pkg_rows, meta_rows = [], []
        if pkg_rows:
            yield pkg_rows, meta_rows

    def load(self, conn: sqlite3.Connection, records: List[PackageRecord]) -> int:
        """
        Create the schema in an empty database and insert every record.

        Runs in a single transaction; batches are issued sequentially. Returns
        the number of package rows written.
        """
        with_meta = any(record.meta is not None for record in records)
        total = 0
        with conn:
            conn.execute(PKGS_DDL)
            if with_meta:
                conn.execute(META_DDL)
            for pkg_rows, meta_rows in self.rows(records):
                conn.executemany(INSERT_PKG, pkg_rows)
                if meta_rows:
                    conn.executemany(INSERT_META, meta_rows)
                total += len(pkg_rows)
                logger.debug(f"Inserted {total}/{len(records)} packages")
        return total
