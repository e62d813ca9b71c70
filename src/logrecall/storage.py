"""SQLite storage for the logrecall index."""

import contextlib
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import sqlite_vec

from logrecall.errors import IndexCorruption, NotIndexed
from logrecall.models import (
    Filters,
    IndexGeneration,
    LogFormat,
    ManifestEntry,
    Record,
    Role,
    Source,
)

DB_NAME = "index.db"
SCHEMA_VERSION = "3"

RECORD_COLUMNS = (
    "doc_id, session_id, source, role, ts, project, tool, text, path, raw_offset, sub_index"
)


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Open a connection with sqlite-vec loaded and autocommit transactions."""
    try:
        conn = sqlite3.connect(str(db_path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.execute("PRAGMA busy_timeout = 5000")
    except sqlite3.DatabaseError as e:
        raise IndexCorruption(f"Cannot open index {db_path}: {e}") from e
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Initialize the database schema."""
    conn.execute("PRAGMA journal_mode = WAL")
    conn.executescript(f"""
        BEGIN;

        -- Metadata table for schema version and embedding dimension
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        -- One row per committed generation
        CREATE TABLE IF NOT EXISTS generations (
            id INTEGER PRIMARY KEY,
            committed_at TEXT NOT NULL,
            record_count INTEGER NOT NULL,
            files_changed INTEGER NOT NULL,
            records_added INTEGER NOT NULL,
            records_removed INTEGER NOT NULL
        );

        -- Per-file watermark and fingerprint
        CREATE TABLE IF NOT EXISTS manifest (
            path TEXT PRIMARY KEY,
            format TEXT NOT NULL,
            size INTEGER NOT NULL,
            mtime_ns INTEGER NOT NULL,
            content_hash TEXT NOT NULL,
            offset INTEGER NOT NULL,
            generation INTEGER NOT NULL,
            record_count INTEGER NOT NULL,
            parser_state TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS records (
            doc_id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            source TEXT NOT NULL,
            role TEXT NOT NULL,
            ts REAL NOT NULL,
            project TEXT,
            tool TEXT,
            text TEXT NOT NULL,
            path TEXT NOT NULL,
            raw_offset INTEGER NOT NULL,
            sub_index INTEGER NOT NULL,
            generation INTEGER NOT NULL
        );
        CREATE INDEX IF NOT EXISTS records_session
            ON records(session_id, path, raw_offset, sub_index);
        CREATE INDEX IF NOT EXISTS records_path ON records(path);

        -- Inverted index: token -> (doc_id, tf), ordered by doc_id
        CREATE TABLE IF NOT EXISTS postings (
            token TEXT NOT NULL,
            doc_id TEXT NOT NULL,
            tf INTEGER NOT NULL,
            PRIMARY KEY (token, doc_id)
        ) WITHOUT ROWID;
        CREATE INDEX IF NOT EXISTS postings_doc ON postings(doc_id);

        -- float32 vectors serialized with sqlite_vec.serialize_float32
        CREATE TABLE IF NOT EXISTS embeddings (
            doc_id TEXT PRIMARY KEY,
            vector BLOB NOT NULL,
            norm REAL NOT NULL
        );

        INSERT OR IGNORE INTO metadata (key, value) VALUES ('schema_version', '{SCHEMA_VERSION}');

        COMMIT;
    """)


def index_exists(root: Path) -> bool:
    """Check if the index database exists."""
    return (root / DB_NAME).exists()


def open_index(root: Path) -> sqlite3.Connection:
    """Open the index for writing, creating it if needed."""
    root.mkdir(parents=True, exist_ok=True)
    db_path = root / DB_NAME
    fresh = not db_path.exists()
    conn = get_connection(db_path)
    try:
        if fresh:
            init_schema(conn)
        verify_index(conn)
    except Exception:
        conn.close()
        raise
    return conn


def verify_index(conn: sqlite3.Connection, full: bool = True) -> None:
    """Raise IndexCorruption if the database is unreadable or inconsistent.

    The full check runs PRAGMA quick_check, which reads every page; readers
    skip it and rely on the schema and generation checks.
    """
    try:
        if full:
            check = conn.execute("PRAGMA quick_check").fetchone()
            if check is None or check[0] != "ok":
                detail = check[0] if check else "no result"
                raise IndexCorruption(f"Index integrity check failed: {detail}")
        version = get_metadata(conn, "schema_version")
    except sqlite3.DatabaseError as e:
        raise IndexCorruption(f"Index database is unreadable: {e}") from e
    if version is None:
        raise IndexCorruption("Index is missing its schema version")
    if version != SCHEMA_VERSION:
        raise IndexCorruption(f"Index schema version {version} does not match {SCHEMA_VERSION}")


# Metadata


def set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute("INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value))


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


# Generations


def current_generation(conn: sqlite3.Connection) -> IndexGeneration:
    row = conn.execute(
        "SELECT id, committed_at, record_count FROM generations ORDER BY id DESC LIMIT 1"
    ).fetchone()
    if row is None:
        return IndexGeneration(id=0, committed_at=None, record_count=0)
    return IndexGeneration(id=row["id"], committed_at=row["committed_at"], record_count=row["record_count"])


def publish_generation(
    conn: sqlite3.Connection, files_changed: int, records_added: int, records_removed: int
) -> IndexGeneration:
    """Insert the next generation row. Must run inside the writer's transaction."""
    previous = current_generation(conn)
    record_count = conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
    generation = IndexGeneration(
        id=previous.id + 1,
        committed_at=datetime.now(tz=timezone.utc).isoformat(),
        record_count=record_count,
    )
    conn.execute(
        """
        INSERT INTO generations (id, committed_at, record_count, files_changed, records_added, records_removed)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (generation.id, generation.committed_at, record_count, files_changed, records_added, records_removed),
    )
    return generation


# Manifest


def _row_to_manifest(row: sqlite3.Row) -> ManifestEntry:
    return ManifestEntry(
        path=row["path"],
        format=LogFormat(row["format"]),
        size=row["size"],
        mtime_ns=row["mtime_ns"],
        content_hash=row["content_hash"],
        offset=row["offset"],
        generation=row["generation"],
        record_count=row["record_count"],
        parser_state=json.loads(row["parser_state"]),
    )


def load_manifest(conn: sqlite3.Connection) -> dict[str, ManifestEntry]:
    try:
        rows = conn.execute("SELECT * FROM manifest").fetchall()
        return {row["path"]: _row_to_manifest(row) for row in rows}
    except (sqlite3.DatabaseError, ValueError) as e:
        raise IndexCorruption(f"Manifest is unreadable: {e}") from e


def save_manifest_entry(conn: sqlite3.Connection, entry: ManifestEntry) -> None:
    conn.execute(
        """
        INSERT OR REPLACE INTO manifest
            (path, format, size, mtime_ns, content_hash, offset, generation, record_count, parser_state)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.path,
            entry.format.value,
            entry.size,
            entry.mtime_ns,
            entry.content_hash,
            entry.offset,
            entry.generation,
            entry.record_count,
            json.dumps(entry.parser_state, sort_keys=True),
        ),
    )


def delete_manifest_entry(conn: sqlite3.Connection, path: str) -> None:
    conn.execute("DELETE FROM manifest WHERE path = ?", (path,))


# Records


def row_to_record(row: sqlite3.Row) -> Record:
    try:
        return Record(
            doc_id=row["doc_id"],
            session_id=row["session_id"],
            source=Source(row["source"]),
            role=Role(row["role"]),
            ts=row["ts"],
            project=row["project"],
            tool=row["tool"],
            text=row["text"],
            path=row["path"],
            raw_offset=row["raw_offset"],
            sub_index=row["sub_index"],
        )
    except ValueError as e:
        raise IndexCorruption(f"Record {row['doc_id']} is unreadable: {e}") from e


def save_record(conn: sqlite3.Connection, record: Record, generation: int) -> bool:
    """Insert a record. Returns False if the doc_id was already present."""
    cursor = conn.execute(
        f"""
        INSERT OR IGNORE INTO records ({RECORD_COLUMNS}, generation)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record.doc_id,
            record.session_id,
            record.source.value,
            record.role.value,
            record.ts,
            record.project,
            record.tool,
            record.text,
            record.path,
            record.raw_offset,
            record.sub_index,
            generation,
        ),
    )
    return cursor.rowcount == 1


def delete_file_records(conn: sqlite3.Connection, path: str) -> int:
    """Delete all records, postings and embeddings contributed by a file."""
    conn.execute(
        "DELETE FROM postings WHERE doc_id IN (SELECT doc_id FROM records WHERE path = ?)", (path,)
    )
    conn.execute(
        "DELETE FROM embeddings WHERE doc_id IN (SELECT doc_id FROM records WHERE path = ?)", (path,)
    )
    return conn.execute("DELETE FROM records WHERE path = ?", (path,)).rowcount


def get_record(conn: sqlite3.Connection, doc_id: str) -> Record | None:
    row = conn.execute(
        f"SELECT {RECORD_COLUMNS} FROM records WHERE doc_id = ?", (doc_id,)
    ).fetchone()
    return row_to_record(row) if row else None


def get_records(conn: sqlite3.Connection, doc_ids: list[str]) -> dict[str, Record]:
    """Fetch many records by id."""
    records: dict[str, Record] = {}
    # Stay under SQLite's bound-parameter limit
    for start in range(0, len(doc_ids), 500):
        batch = doc_ids[start : start + 500]
        placeholders = ",".join("?" * len(batch))
        rows = conn.execute(
            f"SELECT {RECORD_COLUMNS} FROM records WHERE doc_id IN ({placeholders})", batch
        ).fetchall()
        for row in rows:
            records[row["doc_id"]] = row_to_record(row)
    return records


def filter_clause(filters: Filters | None, alias: str = "r") -> tuple[str, list[Any]]:
    """Build a SQL WHERE fragment for the record-level filters."""
    if filters is None:
        return "1", []
    clauses: list[str] = []
    params: list[Any] = []
    equality = (
        ("project", filters.project),
        ("role", filters.role.value if filters.role else None),
        ("tool", filters.tool),
        ("session_id", filters.session_id),
        ("source", filters.source.value if filters.source else None),
    )
    for column, value in equality:
        if value is not None:
            clauses.append(f"{alias}.{column} = ?")
            params.append(value)
    if filters.since is not None:
        clauses.append(f"{alias}.ts >= ?")
        params.append(filters.since)
    if filters.until is not None:
        clauses.append(f"{alias}.ts <= ?")
        params.append(filters.until)
    return (" AND ".join(clauses) or "1"), params


def find_records(conn: sqlite3.Connection, filters: Filters) -> list[Record]:
    """All records matching the filters (filter-only listing)."""
    where, params = filter_clause(filters)
    rows = conn.execute(
        f"SELECT {RECORD_COLUMNS} FROM records r WHERE {where} ORDER BY r.ts DESC, r.doc_id", params
    ).fetchall()
    return [row_to_record(row) for row in rows]


def get_index_stats(conn: sqlite3.Connection) -> dict[str, Any]:
    """Get index statistics."""
    generation = current_generation(conn)
    by_source = conn.execute(
        "SELECT source, COUNT(*) AS n FROM records GROUP BY source ORDER BY source"
    ).fetchall()
    return {
        "generation": generation.id,
        "last_indexed": generation.committed_at,
        "record_count": conn.execute("SELECT COUNT(*) FROM records").fetchone()[0],
        "session_count": conn.execute("SELECT COUNT(DISTINCT session_id) FROM records").fetchone()[0],
        "file_count": conn.execute("SELECT COUNT(*) FROM manifest").fetchone()[0],
        "embedding_count": conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0],
        "by_source": {row["source"]: row["n"] for row in by_source},
    }


def _format_size(size_bytes: int) -> str:
    """Format byte size as human-readable string."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


class Snapshot:
    """A reader pinned to one committed generation.

    The read transaction opened here holds a WAL snapshot, so commits made by
    a concurrent sync stay invisible until the snapshot is closed.
    """

    def __init__(self, root: Path) -> None:
        db_path = root / DB_NAME
        if not db_path.exists():
            raise NotIndexed(f"No index found at {root}. Run 'logrecall index' first.")
        self.root = root
        self.conn = get_connection(db_path)
        try:
            verify_index(self.conn, full=False)
            self.conn.execute("BEGIN")
            self.generation = current_generation(self.conn)
            dim = get_metadata(self.conn, "embedding_dim")
            self.embedding_dim = int(dim) if dim else None
            self._check_consistency()
        except sqlite3.DatabaseError as e:
            self.conn.close()
            raise IndexCorruption(f"Index database is unreadable: {e}") from e
        except Exception:
            self.conn.close()
            raise

    def _check_consistency(self) -> None:
        count = self.conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
        if count != self.generation.record_count:
            raise IndexCorruption(
                f"Generation {self.generation.id} lists {self.generation.record_count} records "
                f"but the index holds {count}"
            )
        orphans = self.conn.execute(
            "SELECT COUNT(*) FROM embeddings e LEFT JOIN records r ON r.doc_id = e.doc_id "
            "WHERE r.doc_id IS NULL"
        ).fetchone()[0]
        if orphans:
            raise IndexCorruption(f"{orphans} embeddings reference missing records")

    def size_human(self) -> str:
        return _format_size((self.root / DB_NAME).stat().st_size)

    def close(self) -> None:
        with contextlib.suppress(sqlite3.OperationalError):
            self.conn.execute("ROLLBACK")
        self.conn.close()

    def __enter__(self) -> "Snapshot":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def open_snapshot(root: Path) -> Snapshot:
    """Bind a reader to the newest committed generation."""
    return Snapshot(root)
