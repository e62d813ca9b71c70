"""Embedding store backed by sqlite-vec."""

import math
import sqlite3
from collections.abc import Sequence

import sqlite_vec

from logrecall.errors import EmbeddingUnavailable
from logrecall.models import Filters
from logrecall.storage import filter_clause, get_metadata, set_metadata


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| |b|), or 0 when either vector has zero length."""
    norm_a = vector_norm(a)
    norm_b = vector_norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return sum(x * y for x, y in zip(a, b, strict=True)) / (norm_a * norm_b)


def vector_norm(vector: Sequence[float]) -> float:
    return math.sqrt(sum(x * x for x in vector))


class EmbeddingStore:
    """Vectors keyed by doc_id, searched by cosine similarity.

    Reads see whatever generation the connection's transaction is pinned to.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @property
    def dimension(self) -> int | None:
        value = get_metadata(self.conn, "embedding_dim")
        return int(value) if value else None

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

    def reset(self, dimension: int) -> int:
        """Drop every vector and switch to a new dimension."""
        removed = self.conn.execute("DELETE FROM embeddings").rowcount
        set_metadata(self.conn, "embedding_dim", str(dimension))
        return removed

    def put(self, doc_id: str, vector: Sequence[float]) -> None:
        """Store a vector. Zero vectors are kept but never match a search."""
        dim = self.dimension
        if dim is None:
            set_metadata(self.conn, "embedding_dim", str(len(vector)))
        elif len(vector) != dim:
            raise EmbeddingUnavailable(
                f"embedding dimensions mismatch: expected {dim}, got {len(vector)}"
            )
        self.conn.execute(
            "INSERT OR REPLACE INTO embeddings (doc_id, vector, norm) VALUES (?, ?, ?)",
            (doc_id, sqlite_vec.serialize_float32(list(vector)), vector_norm(vector)),
        )

    def missing_doc_ids(self) -> list[str]:
        """Records with no vector, in doc_id order."""
        rows = self.conn.execute(
            """
            SELECT r.doc_id FROM records r
            LEFT JOIN embeddings e ON e.doc_id = r.doc_id
            WHERE e.doc_id IS NULL
            ORDER BY r.doc_id
            """
        ).fetchall()
        return [row[0] for row in rows]

    def similarity_search(
        self, query_vector: Sequence[float], k: int, filters: Filters | None = None
    ) -> list[tuple[str, float]]:
        """Top-k (doc_id, cosine similarity), best first, ties by doc_id.

        Filters restrict the candidate records before the top-k cut.
        """
        dim = self.dimension
        if dim is None or k <= 0 or vector_norm(query_vector) == 0:
            return []
        if len(query_vector) != dim:
            raise EmbeddingUnavailable(
                f"query embedding has {len(query_vector)} dimensions, index has {dim}"
            )

        where, params = filter_clause(filters)
        rows = self.conn.execute(
            f"""
            SELECT e.doc_id, 1.0 - vec_distance_cosine(e.vector, ?) AS similarity
            FROM embeddings e
            JOIN records r ON r.doc_id = e.doc_id
            WHERE e.norm > 0 AND {where}
            ORDER BY similarity DESC, e.doc_id
            LIMIT ?
            """,
            [sqlite_vec.serialize_float32(list(query_vector)), *params, k],
        ).fetchall()
        return [(row[0], float(row[1])) for row in rows]
