"""Search combining the lexical index and vector similarity."""

import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from logrecall import lexical
from logrecall.embeddings import Embedder, encode_text
from logrecall.errors import EmbeddingUnavailable, QueryError
from logrecall.models import IndexGeneration, Mode, QueryOptions, ScoredHit, SortOrder
from logrecall.storage import Snapshot, find_records, get_records
from logrecall.vectors import EmbeddingStore

log = logging.getLogger(__name__)

# Weights for combining normalized scores in hybrid mode
LEXICAL_WEIGHT = 0.4
SEMANTIC_WEIGHT = 0.6

# Semantic candidates fetched per requested result
CANDIDATE_FACTOR = 20
MIN_CANDIDATES = 500


def parse_since(since: str | None) -> float | None:
    """Parse a time bound into seconds since epoch.

    Supports:
    - Relative: "1w", "7d", "30d", "2h", "3m", "1y"
    - Absolute: "2024-01-01", "2024-01-01T00:00:00"
    """
    if since is None:
        return None

    since = since.strip().lower()

    # Relative time patterns
    match = re.match(r"^(\d+)([hdwmy])$", since)
    if match:
        amount = int(match.group(1))
        unit = match.group(2)

        now = datetime.now(tz=timezone.utc)
        if unit == "h":
            delta = timedelta(hours=amount)
        elif unit == "d":
            delta = timedelta(days=amount)
        elif unit == "w":
            delta = timedelta(weeks=amount)
        elif unit == "m":
            delta = timedelta(days=amount * 30)  # Approximate
        else:
            delta = timedelta(days=amount * 365)  # Approximate
        return (now - delta).timestamp()

    # Try parsing as ISO date
    try:
        if "t" in since:
            dt = datetime.fromisoformat(since.upper().replace("Z", "+00:00"))
        else:
            dt = datetime.fromisoformat(since + "T00:00:00")
    except ValueError as e:
        raise QueryError(f"Invalid date format: {since}") from e
    # If naive, assume UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def validate_options(text: str, options: QueryOptions) -> None:
    """Reject invalid filter and flag combinations before touching the index."""
    if not isinstance(options.mode, Mode):
        raise QueryError(f"Unknown search mode: {options.mode}")
    if not isinstance(options.sort, SortOrder):
        raise QueryError(f"Unknown sort order: {options.sort}")
    if options.limit < 1:
        raise QueryError("--limit must be at least 1")
    if options.top_n_per_session is not None:
        if options.unique_session:
            raise QueryError("--top-n-per-session and --unique-session cannot be combined")
        if options.top_n_per_session < 1:
            raise QueryError("--top-n-per-session must be at least 1")

    filters = options.filters
    if filters.since is not None and filters.until is not None and filters.since > filters.until:
        raise QueryError("--since is later than --until")
    if filters.min_score is not None and filters.min_score < 0:
        raise QueryError("--min-score cannot be negative")
    if not text.strip() and filters.is_empty():
        raise QueryError("Query required (or at least one filter)")


def normalize(scores: dict[str, float], doc_ids: list[str]) -> dict[str, float]:
    """Min-max normalize scores to [0, 1] over doc_ids. Missing ids count as 0.

    When every value is equal the result is 1 for a positive value, else 0.
    """
    values = {doc_id: scores.get(doc_id, 0.0) for doc_id in doc_ids}
    if not values:
        return {}
    low = min(values.values())
    high = max(values.values())
    if high == low:
        flat = 1.0 if high > 0 else 0.0
        return {doc_id: flat for doc_id in values}
    span = high - low
    return {doc_id: (value - low) / span for doc_id, value in values.items()}


def fuse(
    lexical_scores: dict[str, float],
    semantic_scores: dict[str, float],
    doc_ids: list[str],
    lexical_weight: float = LEXICAL_WEIGHT,
    semantic_weight: float = SEMANTIC_WEIGHT,
) -> dict[str, float]:
    """Weighted sum of independently normalized scores.

    Both weights are non-negative, so raising either normalized score never
    lowers the combined score.
    """
    if lexical_weight < 0 or semantic_weight < 0:
        raise QueryError("Fusion weights must be non-negative")
    norm_lex = normalize(lexical_scores, doc_ids)
    norm_sem = normalize(semantic_scores, doc_ids)
    return {
        doc_id: lexical_weight * norm_lex[doc_id] + semantic_weight * norm_sem[doc_id]
        for doc_id in doc_ids
    }


def score_key(hit: ScoredHit) -> tuple[float, str]:
    return (-hit.combined_score, hit.doc_id)


def group_top_n(hits: list[ScoredHit], n: int) -> list[ScoredHit]:
    """Keep only the n best hits of each session."""
    by_session: dict[str, list[ScoredHit]] = defaultdict(list)
    for hit in sorted(hits, key=score_key):
        group = by_session[hit.record.session_id]
        if len(group) < n:
            group.append(hit)
    return [hit for group in by_session.values() for hit in group]


def sort_hits(hits: list[ScoredHit], order: SortOrder) -> list[ScoredHit]:
    """Order hits. Ties always break on doc_id ascending."""
    if order is SortOrder.TS:
        return sorted(hits, key=lambda h: (-h.record.ts, h.doc_id))
    return sorted(hits, key=score_key)


class QueryEngine:
    """Runs queries against one pinned index generation."""

    def __init__(
        self,
        snapshot: Snapshot,
        embedder: Embedder | None = None,
        embeddings_enabled: bool = True,
        lexical_weight: float = LEXICAL_WEIGHT,
        semantic_weight: float = SEMANTIC_WEIGHT,
    ) -> None:
        self.snapshot = snapshot
        self.embedder = embedder
        self.embeddings_enabled = embeddings_enabled
        self.lexical_weight = lexical_weight
        self.semantic_weight = semantic_weight

    @property
    def generation(self) -> IndexGeneration:
        return self.snapshot.generation

    def _semantic_scores(self, text: str, options: QueryOptions) -> dict[str, float] | None:
        """Cosine scores for the query, or None when semantic search is unavailable."""
        try:
            if not self.embeddings_enabled or self.embedder is None:
                raise EmbeddingUnavailable("embeddings are disabled")
            store = EmbeddingStore(self.snapshot.conn)
            if store.count() == 0:
                raise EmbeddingUnavailable("the index holds no embeddings")
            query_vector = encode_text(self.embedder, text)
            k = max(options.limit * CANDIDATE_FACTOR, MIN_CANDIDATES)
            return dict(store.similarity_search(query_vector, k, options.filters))
        except EmbeddingUnavailable as e:
            if options.mode is Mode.SEMANTIC:
                raise QueryError(f"Semantic search unavailable: {e}") from e
            log.warning("Semantic scoring unavailable (%s), using lexical results only", e)
            return None

    def query(self, text: str, options: QueryOptions) -> list[ScoredHit]:
        """Rank, filter, group, sort and truncate hits for a query."""
        validate_options(text, options)
        filters = options.filters
        conn = self.snapshot.conn

        if not text.strip():
            hits = [
                ScoredHit(doc_id=r.doc_id, lexical_score=0.0, semantic_score=0.0, combined_score=0.0, record=r)
                for r in find_records(conn, filters)
            ]
            return self._finish(hits, options)

        lexical_scores: dict[str, float] = {}
        semantic_scores: dict[str, float] = {}

        if options.mode in (Mode.EXACT, Mode.HYBRID):
            require_all = options.mode is Mode.EXACT and not options.relaxed
            lexical_scores = lexical.search(conn, text, require_all=require_all)

        semantic_available = False
        if options.mode in (Mode.SEMANTIC, Mode.HYBRID):
            scores = self._semantic_scores(text, options)
            if scores is not None:
                semantic_scores = scores
                semantic_available = True

        candidates = sorted(set(lexical_scores) | set(semantic_scores))
        records = get_records(conn, candidates)
        eligible = [doc_id for doc_id in candidates if doc_id in records and filters.matches(records[doc_id])]

        if options.mode is Mode.HYBRID and semantic_available:
            combined = fuse(
                lexical_scores, semantic_scores, eligible, self.lexical_weight, self.semantic_weight
            )
        elif options.mode is Mode.SEMANTIC:
            combined = {doc_id: semantic_scores.get(doc_id, 0.0) for doc_id in eligible}
        else:
            combined = {doc_id: lexical_scores.get(doc_id, 0.0) for doc_id in eligible}

        hits = [
            ScoredHit(
                doc_id=doc_id,
                lexical_score=lexical_scores.get(doc_id, 0.0),
                semantic_score=semantic_scores.get(doc_id, 0.0),
                combined_score=combined[doc_id],
                record=records[doc_id],
            )
            for doc_id in eligible
        ]
        return self._finish(hits, options)

    def _finish(self, hits: list[ScoredHit], options: QueryOptions) -> list[ScoredHit]:
        min_score = options.filters.min_score
        if min_score is not None:
            hits = [hit for hit in hits if hit.combined_score >= min_score]

        if options.unique_session:
            hits = group_top_n(hits, 1)
        elif options.top_n_per_session is not None:
            hits = group_top_n(hits, options.top_n_per_session)

        return sort_hits(hits, options.sort)[: options.limit]
