"""Incremental JSONL log indexer."""

import copy
import hashlib
import logging
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from logrecall.config import Settings
from logrecall.embeddings import Embedder, SentenceTransformerEmbedder, encode_batch
from logrecall.errors import EmbeddingUnavailable, LockTimeout, SyncCancelled
from logrecall.lexical import add_postings
from logrecall.models import IndexGeneration, LogFormat, ManifestEntry, Record, SyncStats, source_path
from logrecall.parsers import ParseCursor, parse
from logrecall.storage import (
    DB_NAME,
    current_generation,
    delete_file_records,
    delete_manifest_entry,
    get_records,
    load_manifest,
    open_index,
    publish_generation,
    save_manifest_entry,
    save_record,
)
from logrecall.vectors import EmbeddingStore

log = logging.getLogger(__name__)
console = Console(stderr=True)

NEW = "new"
APPEND = "append"
REINGEST = "reingest"


@dataclass
class FilePlan:
    """What to do with one changed log file."""

    path: Path
    key: str
    format: LogFormat
    action: str
    size: int
    mtime_ns: int
    start_offset: int = 0
    state: dict[str, Any] = field(default_factory=dict)
    previous: ManifestEntry | None = None


@dataclass
class FileResult:
    plan: FilePlan
    records: list[Record]
    offset: int
    state: dict[str, Any]
    content_hash: str
    lines_parsed: int


class _Deadline:
    """Cancellation token combining an Event with an optional time bound."""

    def __init__(self, cancel: threading.Event | None, timeout: float | None) -> None:
        self.cancel = cancel
        self.expires = time.monotonic() + timeout if timeout is not None else None

    def check(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise SyncCancelled("Index sync was cancelled; no changes were applied")
        if self.expires is not None and time.monotonic() > self.expires:
            raise SyncCancelled("Index sync timed out; no changes were applied")


def discover_logs(settings: Settings) -> list[tuple[Path, LogFormat]]:
    """Discover all log files and their format tags."""
    found: list[tuple[Path, LogFormat]] = []
    if settings.claude_dir.is_dir():
        found.extend((p, LogFormat.CLAUDE) for p in settings.claude_dir.glob("**/*.jsonl"))
    sessions_dir = settings.codex_dir / "sessions"
    if sessions_dir.is_dir():
        found.extend((p, LogFormat.CODEX_SESSION) for p in sessions_dir.glob("**/*.jsonl"))
    history = settings.codex_dir / "history.jsonl"
    if history.is_file():
        found.append((history, LogFormat.CODEX_HISTORY))
    return sorted((p.resolve(), fmt) for p, fmt in found if p.is_file())


def file_digest(path: Path, length: int) -> str:
    """sha256 of the first `length` bytes of a file."""
    digest = hashlib.sha256()
    remaining = length
    with open(path, "rb") as f:
        while remaining > 0:
            block = f.read(min(1 << 20, remaining))
            if not block:
                break
            digest.update(block)
            remaining -= len(block)
    return digest.hexdigest()


def plan_file(path: Path, fmt: LogFormat, entry: ManifestEntry | None) -> FilePlan | None:
    """Compare a file to its manifest entry. Returns None when unchanged."""
    st = path.stat()
    plan = FilePlan(
        path=path,
        key=source_path(path),
        format=fmt,
        action=NEW,
        size=st.st_size,
        mtime_ns=st.st_mtime_ns,
        previous=entry,
    )
    if entry is None:
        return plan
    if entry.format != fmt:
        plan.action = REINGEST
        return plan
    if entry.size == st.st_size and entry.mtime_ns == st.st_mtime_ns:
        return None
    if st.st_size >= entry.offset and file_digest(path, entry.offset) == entry.content_hash:
        plan.action = APPEND
        plan.start_offset = entry.offset
        plan.state = copy.deepcopy(entry.parser_state)
        return plan
    plan.action = REINGEST
    return plan


def ingest_file(plan: FilePlan) -> FileResult:
    """Parse one file from its plan's start offset. Touches no shared state."""
    cursor = ParseCursor(offset=plan.start_offset, end=plan.size, state=copy.deepcopy(plan.state))
    records = list(parse(plan.path, plan.format, cursor))
    return FileResult(
        plan=plan,
        records=records,
        offset=cursor.offset,
        state=cursor.state,
        content_hash=file_digest(plan.path, cursor.offset),
        lines_parsed=cursor.lines_parsed,
    )


def _parse_all(
    plans: list[FilePlan], workers: int, deadline: _Deadline, progress: Progress | None
) -> list[FileResult]:
    results: list[FileResult] = []
    task = progress.add_task("Parsing logs...", total=len(plans)) if progress else None

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = {pool.submit(ingest_file, plan): plan for plan in plans}
        try:
            for future in as_completed(futures):
                plan = futures[future]
                try:
                    results.append(future.result())
                except OSError as e:
                    log.warning("Skipping %s: %s", plan.path, e)
                if progress is not None and task is not None:
                    progress.advance(task)
                deadline.check()
        except BaseException:
            for pending in futures:
                pending.cancel()
            raise

    # Commit order must not depend on thread scheduling
    results.sort(key=lambda r: r.plan.key)
    return results


def _embed_pending(
    conn: sqlite3.Connection,
    embedder: Embedder,
    results: list[FileResult],
    dropped_paths: set[str],
    batch_size: int,
    deadline: _Deadline,
    stats: SyncStats,
    progress: Progress | None,
) -> tuple[dict[str, list[float]], int | None]:
    """Embed new records plus any indexed records that still lack a vector.

    Returns the vectors to store and, if the embedder's dimension differs from
    the stored one, the new dimension the store must be reset to.
    """
    store = EmbeddingStore(conn)
    texts: dict[str, str] = {}
    for result in results:
        for record in result.records:
            texts.setdefault(record.doc_id, record.text)

    backfill = [doc_id for doc_id in store.missing_doc_ids() if doc_id not in texts]
    for doc_id, record in get_records(conn, backfill).items():
        if record.path not in dropped_paths:
            texts[doc_id] = record.text

    queue = sorted(texts)
    vectors: dict[str, list[float]] = {}
    reset_dim: int | None = None
    stored_dim = store.dimension
    expected_dim: int | None = None
    unavailable = False

    task = progress.add_task("Generating embeddings...", total=len(queue)) if progress else None
    position = 0
    while position < len(queue):
        deadline.check()
        batch = queue[position : position + batch_size]
        position += len(batch)
        if unavailable:
            stats.embed_failed += len(batch)
            continue
        try:
            batch_vectors = encode_batch(embedder, [texts[doc_id] for doc_id in batch])
        except EmbeddingUnavailable as e:
            # Remaining batches are left for a later sync to backfill
            log.warning(
                "Embeddings unavailable, indexing %d records lexically only: %s",
                len(queue) - position + len(batch),
                e,
            )
            stats.embed_failed += len(batch)
            unavailable = True
            continue

        dims = {len(vector) for vector in batch_vectors}
        if expected_dim is None:
            expected_dim = len(batch_vectors[0])
            if stored_dim is not None and expected_dim != stored_dim:
                reset_dim = expected_dim
                log.warning(
                    "Embedding dimension changed from %d to %d, re-embedding the index",
                    stored_dim,
                    reset_dim,
                )
                for doc_id, record in sorted(get_records(conn, _all_doc_ids(conn)).items()):
                    if doc_id not in texts and record.path not in dropped_paths:
                        texts[doc_id] = record.text
                        queue.append(doc_id)
                if progress is not None and task is not None:
                    progress.update(task, total=len(queue))
        if dims != {expected_dim}:
            log.warning("Embedder returned vectors of inconsistent size %s, skipping %d records", sorted(dims), len(batch))
            stats.embed_failed += len(batch)
            continue

        for doc_id, vector in zip(batch, batch_vectors, strict=True):
            vectors[doc_id] = vector
        if progress is not None and task is not None:
            progress.advance(task, len(batch))

    return vectors, reset_dim


def _all_doc_ids(conn: sqlite3.Connection) -> list[str]:
    return [row[0] for row in conn.execute("SELECT doc_id FROM records ORDER BY doc_id")]


def _commit(
    conn: sqlite3.Connection,
    results: list[FileResult],
    removed: list[str],
    vectors: dict[str, list[float]],
    reset_dim: int | None,
    deadline: _Deadline,
    stats: SyncStats,
) -> IndexGeneration:
    """Apply everything in one transaction: data first, then manifest and generation."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        generation_id = current_generation(conn).id + 1

        for key in removed:
            stats.records_removed += delete_file_records(conn, key)
            delete_manifest_entry(conn, key)

        for result in results:
            plan = result.plan
            base_count = 0
            if plan.action == APPEND and plan.previous is not None:
                base_count = plan.previous.record_count
            else:
                stats.records_removed += delete_file_records(conn, plan.key)

            added = 0
            for record in result.records:
                if save_record(conn, record, generation_id):
                    add_postings(conn, record)
                    added += 1
            stats.records_added += added

            save_manifest_entry(
                conn,
                ManifestEntry(
                    path=plan.key,
                    format=plan.format,
                    size=plan.size,
                    mtime_ns=plan.mtime_ns,
                    content_hash=result.content_hash,
                    offset=result.offset,
                    generation=generation_id,
                    record_count=base_count + added,
                    parser_state=result.state,
                ),
            )

        store = EmbeddingStore(conn)
        if reset_dim is not None:
            store.reset(reset_dim)
        for doc_id, vector in vectors.items():
            store.put(doc_id, vector)
            stats.embedded += 1

        generation = publish_generation(
            conn,
            files_changed=len(results) + len(removed),
            records_added=stats.records_added,
            records_removed=stats.records_removed,
        )
        deadline.check()
        conn.execute("COMMIT")
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    return generation


def _remove_index_files(root: Path) -> None:
    for suffix in ("", "-wal", "-shm"):
        path = root / f"{DB_NAME}{suffix}"
        path.unlink(missing_ok=True)


def _sync_locked(
    settings: Settings,
    embedder: Embedder | None,
    deadline: _Deadline,
    stats: SyncStats,
    rebuild: bool,
    progress: Progress | None,
) -> IndexGeneration:
    if rebuild:
        log.info("Rebuilding index at %s", settings.root)
        _remove_index_files(settings.root)

    conn = open_index(settings.root)
    try:
        manifest = load_manifest(conn)
        logs = discover_logs(settings)
        stats.files_seen = len(logs)

        plans: list[FilePlan] = []
        seen: set[str] = set()
        for path, fmt in logs:
            key = source_path(path)
            seen.add(key)
            try:
                plan = plan_file(path, fmt, manifest.get(key))
            except OSError as e:
                log.warning("Skipping %s: %s", path, e)
                continue
            if plan is None:
                stats.files_unchanged += 1
                continue
            if plan.action == NEW:
                stats.files_new += 1
            elif plan.action == APPEND:
                stats.files_appended += 1
            else:
                stats.files_reingested += 1
            plans.append(plan)

        removed = sorted(key for key in manifest if key not in seen)
        stats.files_removed = len(removed)
        deadline.check()

        results = _parse_all(plans, settings.workers, deadline, progress)
        stats.lines_parsed = sum(r.lines_parsed for r in results)

        vectors: dict[str, list[float]] = {}
        reset_dim: int | None = None
        if settings.embeddings:
            if embedder is None:
                embedder = SentenceTransformerEmbedder(settings.model)
            dropped = set(removed) | {r.plan.key for r in results if r.plan.action != APPEND}
            vectors, reset_dim = _embed_pending(
                conn, embedder, results, dropped, settings.embedding_batch_size, deadline, stats, progress
            )

        if not results and not removed and not vectors and reset_dim is None:
            return current_generation(conn)

        deadline.check()
        generation = _commit(conn, results, removed, vectors, reset_dim, deadline, stats)
        log.info(
            "Committed generation %d: +%d/-%d records, %d embeddings",
            generation.id,
            stats.records_added,
            stats.records_removed,
            stats.embedded,
        )
        return generation
    finally:
        conn.close()


def sync(
    settings: Settings,
    embedder: Embedder | None = None,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
    stats: SyncStats | None = None,
    rebuild: bool = False,
    show_progress: bool = False,
) -> IndexGeneration:
    """Bring the index up to date with the logs and publish a new generation.

    Holds the index lock for the whole run. Returns the current generation
    unchanged, without writing anything, when no log file changed.
    """
    if stats is None:
        stats = SyncStats()
    deadline = _Deadline(cancel, timeout)
    settings.root.mkdir(parents=True, exist_ok=True)

    lock = FileLock(str(settings.lock_path), timeout=settings.lock_timeout)
    try:
        lock.acquire()
    except Timeout as e:
        raise LockTimeout(
            f"Another process is indexing {settings.root} (waited {settings.lock_timeout:.0f}s)"
        ) from e

    try:
        if not show_progress:
            return _sync_locked(settings, embedder, deadline, stats, rebuild, None)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            return _sync_locked(settings, embedder, deadline, stats, rebuild, progress)
    finally:
        lock.release()
