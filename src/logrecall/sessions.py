"""Session transcripts and single-record lookup."""

from logrecall.errors import NotFound
from logrecall.models import Record
from logrecall.storage import RECORD_COLUMNS, Snapshot, get_record, row_to_record

# Shortest doc_id prefix accepted by get()
MIN_PREFIX = 6


class SessionStore:
    """Reads records for one pinned generation."""

    def __init__(self, snapshot: Snapshot) -> None:
        self.snapshot = snapshot

    def transcript(self, session_id: str) -> list[Record]:
        """All records of a session in original log order."""
        rows = self.snapshot.conn.execute(
            f"""
            SELECT {RECORD_COLUMNS} FROM records
            WHERE session_id = ?
            ORDER BY path, raw_offset, sub_index, ts
            """,
            (session_id,),
        ).fetchall()
        if not rows:
            raise NotFound(f"Session not found: {session_id}")
        return [row_to_record(row) for row in rows]

    def get(self, doc_id: str) -> Record:
        """Look up a record by id or by a unique id prefix (first 6+ chars)."""
        record = get_record(self.snapshot.conn, doc_id)
        if record is not None:
            return record

        if len(doc_id) >= MIN_PREFIX:
            rows = self.snapshot.conn.execute(
                f"SELECT {RECORD_COLUMNS} FROM records WHERE substr(doc_id, 1, ?) = ? ORDER BY doc_id LIMIT 2",
                (len(doc_id), doc_id),
            ).fetchall()
            if len(rows) == 1:
                return row_to_record(rows[0])
            if len(rows) > 1:
                raise NotFound(f"Record id prefix is ambiguous: {doc_id}")

        raise NotFound(f"Record not found: {doc_id}")
