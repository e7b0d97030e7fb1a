"""Dedup store – SQLite index from (album, content fingerprint) to the filenames already uploaded.

Every operation opens its own connection and runs in its own transaction, so one
``DedupStore`` may be shared by all upload worker threads.  A duplicate check can
race a concurrent insert of the same fingerprint; the worst case is one extra
upload, never a duplicate row or a corrupt table.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from album_sync.errors import StorageError, VersionMismatchError
from album_sync.hasher import ContentFingerprint

logger = logging.getLogger(__name__)

IMAGE_TABLE = "images"
IMAGE_TABLE_VERSION = 2
VERSION_TABLE = "table_versions"

_CREATE_IMAGES = f"""
CREATE TABLE IF NOT EXISTS {IMAGE_TABLE} (
    id INTEGER NOT NULL PRIMARY KEY,
    album_key TEXT NOT NULL,
    hash TEXT NOT NULL,
    size INTEGER,
    filename TEXT NOT NULL,
    UNIQUE (album_key, hash, filename)
)
"""
_CREATE_VERSIONS = f"""
CREATE TABLE IF NOT EXISTS {VERSION_TABLE} (
    id INTEGER NOT NULL PRIMARY KEY,
    name TEXT NOT NULL,
    version INTEGER NOT NULL
)
"""
_CREATE_INDEXES = (
    f"CREATE INDEX IF NOT EXISTS images_hash_index ON {IMAGE_TABLE} (hash)",
    f"CREATE INDEX IF NOT EXISTS images_album_key_index ON {IMAGE_TABLE} (album_key)",
)

# Re-recording a known (album, hash, filename) triple is a no-op.
_INSERT_SQL = (
    f"INSERT INTO {IMAGE_TABLE} (album_key, hash, size, filename) VALUES (?, ?, ?, ?) "
    "ON CONFLICT (album_key, hash, filename) DO NOTHING"
)
_DELETE_ALBUM_SQL = f"DELETE FROM {IMAGE_TABLE} WHERE album_key = ?"
# A NULL size comes from a remote listing that did not report one; the digest alone decides.
_FIND_DUPES_SQL = (
    f"SELECT filename FROM {IMAGE_TABLE} "
    "WHERE album_key = ? AND hash = ? AND (size IS NULL OR size = ?)"
)


@dataclass(frozen=True)
class DedupRecord:
    """One known (album, content, filename) triple."""

    album: str
    hexdigest: str
    size: int | None
    filename: str

    @classmethod
    def from_fingerprint(cls, album: str, fingerprint: ContentFingerprint, filename: str) -> "DedupRecord":
        return cls(album, fingerprint.hexdigest, fingerprint.size, filename)


class DedupStore:
    """Durable (album, fingerprint) -> filenames index backed by a SQLite file."""

    def __init__(self, db_path: str | Path, timeout: float = 30.0):
        self._db_path = Path(db_path)
        self._timeout = timeout

    @classmethod
    def open(
        cls,
        db_path: str | Path,
        expected_version: int = IMAGE_TABLE_VERSION,
        timeout: float = 30.0,
    ) -> "DedupStore":
        """Open (creating on first use) the store at *db_path* and check its schema version.

        Raises VersionMismatchError when the file was created by a different schema
        version; the data is never reinterpreted.
        """
        path = Path(db_path).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create folder for {path}: {exc}") from exc
        store = cls(path, timeout=timeout)
        store._ensure_schema(expected_version)
        return store

    @property
    def path(self) -> Path:
        return self._db_path

    # ── connection helpers ──────────────────────────────────────────

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = sqlite3.connect(str(self._db_path), timeout=self._timeout)
        except sqlite3.Error as exc:
            raise StorageError(f"Error opening database {self._db_path}: {exc}") from exc
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, action: str) -> Generator[sqlite3.Connection, None, None]:
        """Run the body in one transaction; commit on success, roll back on any error."""
        with self._connect() as conn:
            try:
                with conn:
                    yield conn
            except sqlite3.Error as exc:
                raise StorageError(f"{action} failed: {exc}") from exc

    # ── schema ──────────────────────────────────────────────────────

    def _ensure_schema(self, expected_version: int) -> None:
        with self._transaction("Validating schema") as conn:
            # Hold the write lock while checking, so concurrent first opens create the schema once.
            conn.execute("BEGIN IMMEDIATE")
            tables = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
            if IMAGE_TABLE not in tables and VERSION_TABLE not in tables:
                logger.info("Creating dedup store at %s (version %d)", self._db_path, expected_version)
                conn.execute(_CREATE_IMAGES)
                conn.execute(_CREATE_VERSIONS)
                for stmt in _CREATE_INDEXES:
                    conn.execute(stmt)
                conn.execute(
                    f"INSERT INTO {VERSION_TABLE} (name, version) VALUES (?, ?)",
                    (IMAGE_TABLE, expected_version),
                )
                return

            if VERSION_TABLE not in tables:
                raise VersionMismatchError(IMAGE_TABLE, None, expected_version)

            found = None
            for name, version in conn.execute(f"SELECT name, version FROM {VERSION_TABLE}"):
                if name == IMAGE_TABLE:
                    found = version
            if found != expected_version:
                raise VersionMismatchError(IMAGE_TABLE, found, expected_version)

    # ── writes ──────────────────────────────────────────────────────

    def record_upload(self, album: str, fingerprint: ContentFingerprint, filename: str) -> None:
        """Remember that *filename* with *fingerprint* now exists in *album*."""
        with self._transaction(f"Recording {filename} in album {album}") as conn:
            conn.execute(_INSERT_SQL, (album, fingerprint.hexdigest, fingerprint.size, filename))
        logger.debug("Recorded %s (%s) in album %s", filename, fingerprint.hexdigest, album)

    def record_many(self, album: str, records: Iterable[DedupRecord]) -> int:
        """Insert many records for *album* in a single transaction. Returns the number of new rows."""
        rows = self._rows(album, records)
        with self._transaction(f"Writing image data for album {album}") as conn:
            added = conn.executemany(_INSERT_SQL, rows).rowcount if rows else 0
        return added

    def clear_album(self, album: str) -> int:
        """Delete every record of *album*; all or nothing. Returns the number removed."""
        with self._transaction(f"Deleting image data for album {album}") as conn:
            cur = conn.execute(_DELETE_ALBUM_SQL, (album,))
            removed = cur.rowcount
        logger.debug("Removed %d record(s) for album %s", removed, album)
        return removed

    def replace_album(self, album: str, records: Iterable[DedupRecord]) -> int:
        """Swap the records of *album* for *records* in one transaction."""
        rows = self._rows(album, records)
        with self._transaction(f"Replacing image data for album {album}") as conn:
            conn.execute(_DELETE_ALBUM_SQL, (album,))
            stored = conn.executemany(_INSERT_SQL, rows).rowcount if rows else 0
        logger.info("Stored %d image record(s) for album %s", stored, album)
        return stored

    @staticmethod
    def _rows(album: str, records: Iterable[DedupRecord]) -> list[tuple]:
        rows = []
        for rec in records:
            if rec.album != album:
                raise ValueError(f"Record for album {rec.album} passed for album {album}")
            rows.append((album, rec.hexdigest, rec.size, rec.filename))
        return rows

    # ── reads ───────────────────────────────────────────────────────

    def find_duplicates(self, album: str, fingerprint: ContentFingerprint) -> frozenset[str]:
        """Filenames already recorded in *album* with exactly this content; empty if none."""
        with self._connect() as conn:
            try:
                rows = conn.execute(
                    _FIND_DUPES_SQL, (album, fingerprint.hexdigest, fingerprint.size)
                ).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Checking for duplicate images failed: {exc}") from exc
        return frozenset(row[0] for row in rows)

    def count(self, album: str | None = None) -> int:
        with self._connect() as conn:
            try:
                if album is None:
                    row = conn.execute(f"SELECT COUNT(*) FROM {IMAGE_TABLE}").fetchone()
                else:
                    row = conn.execute(
                        f"SELECT COUNT(*) FROM {IMAGE_TABLE} WHERE album_key = ?", (album,)
                    ).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"Counting image records failed: {exc}") from exc
        return row[0]
