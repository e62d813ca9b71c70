"""Inverted index and tf-idf scoring."""

import math
import re
import sqlite3
from collections import Counter

from logrecall.models import Record

TOKEN_SPLIT = re.compile(r"[^\w]+|_+")


def tokenize(text: str) -> list[str]:
    """Lowercase and split on non-alphanumeric boundaries."""
    return [token for token in TOKEN_SPLIT.split(text.lower()) if token]


def query_terms(text: str) -> list[str]:
    """Distinct query tokens, in first-seen order."""
    return list(dict.fromkeys(tokenize(text)))


def term_weight(tf: int, df: int, total_docs: int) -> float:
    """Score contribution of one term: (1 + ln tf) * ln(1 + N/df)."""
    if tf <= 0 or df <= 0 or total_docs <= 0:
        return 0.0
    return (1.0 + math.log(tf)) * math.log(1.0 + total_docs / df)


def add_postings(conn: sqlite3.Connection, record: Record) -> None:
    counts = Counter(tokenize(record.text))
    conn.executemany(
        "INSERT OR REPLACE INTO postings (token, doc_id, tf) VALUES (?, ?, ?)",
        [(token, record.doc_id, tf) for token, tf in sorted(counts.items())],
    )


def postings(conn: sqlite3.Connection, token: str) -> list[tuple[str, int]]:
    """The posting list for a token, ordered by doc_id."""
    rows = conn.execute(
        "SELECT doc_id, tf FROM postings WHERE token = ? ORDER BY doc_id", (token,)
    ).fetchall()
    return [(row[0], row[1]) for row in rows]


def document_count(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]


def search(conn: sqlite3.Connection, text: str, require_all: bool = True) -> dict[str, float]:
    """Score every document containing the query terms.

    With require_all, a document must contain every distinct term (AND);
    otherwise any single term is enough (OR). Documents with no matching term
    never appear.
    """
    terms = query_terms(text)
    if not terms:
        return {}

    total_docs = document_count(conn)
    scores: dict[str, float] = {}
    matched: Counter[str] = Counter()

    for term in terms:
        plist = postings(conn, term)
        if not plist:
            if require_all:
                return {}
            continue
        df = len(plist)
        for doc_id, tf in plist:
            scores[doc_id] = scores.get(doc_id, 0.0) + term_weight(tf, df, total_docs)
            matched[doc_id] += 1

    if require_all:
        return {doc_id: score for doc_id, score in scores.items() if matched[doc_id] == len(terms)}
    return scores
