"""Data models for logrecall."""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class Source(str, Enum):
    """Which assistant produced a log."""

    CLAUDE = "claude"
    CODEX = "codex"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"


class LogFormat(str, Enum):
    """Format tag selecting the parser for a log file."""

    CLAUDE = "claude"
    CODEX_SESSION = "codex_session"
    CODEX_HISTORY = "codex_history"

    @property
    def source(self) -> Source:
        if self is LogFormat.CLAUDE:
            return Source.CLAUDE
        return Source.CODEX


class Mode(str, Enum):
    EXACT = "exact"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class SortOrder(str, Enum):
    SCORE = "score"
    TS = "ts"


def make_doc_id(source: Source, path: str, session_id: str, raw_offset: int, sub_index: int) -> str:
    """Derive a stable record id from where the record came from."""
    key = f"{source.value}|{path}|{session_id}|{raw_offset}|{sub_index}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


@dataclass
class Record:
    """A single log event."""

    doc_id: str
    session_id: str
    source: Source
    role: Role
    ts: float  # seconds since epoch
    text: str
    path: str
    raw_offset: int
    sub_index: int = 0
    project: str | None = None
    tool: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "session_id": self.session_id,
            "source": self.source.value,
            "role": self.role.value,
            "ts": self.ts,
            "project": self.project,
            "tool": self.tool,
            "text": self.text,
            "path": self.path,
            "raw_offset": self.raw_offset,
        }


@dataclass
class ManifestEntry:
    """Per-file index state."""

    path: str
    format: LogFormat
    size: int
    mtime_ns: int
    content_hash: str  # sha256 of bytes [0, offset)
    offset: int  # end of the last complete line consumed
    generation: int
    record_count: int
    parser_state: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IndexGeneration:
    """An immutable committed snapshot of the index."""

    id: int
    committed_at: str | None
    record_count: int


@dataclass
class ScoredHit:
    """A query-time result. Never persisted."""

    doc_id: str
    lexical_score: float
    semantic_score: float
    combined_score: float
    record: Record


@dataclass
class Filters:
    """Predicates a hit must satisfy to be eligible."""

    project: str | None = None
    role: Role | None = None
    tool: str | None = None
    session_id: str | None = None
    source: Source | None = None
    since: float | None = None
    until: float | None = None
    min_score: float | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.project,
                self.role,
                self.tool,
                self.session_id,
                self.source,
                self.since,
                self.until,
            )
        )

    def matches(self, record: Record) -> bool:
        if self.project is not None and record.project != self.project:
            return False
        if self.role is not None and record.role != self.role:
            return False
        if self.tool is not None and record.tool != self.tool:
            return False
        if self.session_id is not None and record.session_id != self.session_id:
            return False
        if self.source is not None and record.source != self.source:
            return False
        if self.since is not None and record.ts < self.since:
            return False
        if self.until is not None and record.ts > self.until:
            return False
        return True


@dataclass
class QueryOptions:
    mode: Mode = Mode.EXACT
    filters: Filters = field(default_factory=Filters)
    sort: SortOrder = SortOrder.SCORE
    top_n_per_session: int | None = None
    unique_session: bool = False
    limit: int = 20
    relaxed: bool = False


@dataclass
class SyncStats:
    """Counters for one sync run."""

    files_seen: int = 0
    files_new: int = 0
    files_appended: int = 0
    files_reingested: int = 0
    files_unchanged: int = 0
    files_removed: int = 0
    lines_parsed: int = 0
    records_added: int = 0
    records_removed: int = 0
    embedded: int = 0
    embed_failed: int = 0

    @property
    def changed(self) -> bool:
        return bool(
            self.files_new
            or self.files_appended
            or self.files_reingested
            or self.files_removed
            or self.embedded
        )


def source_path(path: Path) -> str:
    """Canonical string form of a log path as stored in the index."""
    return str(path.resolve())
