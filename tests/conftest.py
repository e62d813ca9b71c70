"""Pytest fixtures for logrecall tests."""

import hashlib
import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from logrecall.config import Settings
from logrecall.lexical import add_postings, tokenize
from logrecall.models import Record, Role, Source
from logrecall.storage import save_record

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
CLAUDE_PROJECT_DIR = "-Users-me-Code-webapp"


class FakeEmbedder:
    """Deterministic bag-of-words embedder: each token hashes into one dimension."""

    def __init__(self, dim: int = 16) -> None:
        self.dim = dim
        self.calls = 0

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        vectors = []
        for text in texts:
            vector = [0.0] * self.dim
            for token in tokenize(text):
                bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dim
                vector[bucket] += 1.0
            vectors.append(vector)
        return vectors


class FailingEmbedder:
    """Embedder whose model never loads."""

    def __init__(self) -> None:
        self.calls = 0

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        raise RuntimeError("model unavailable")


def iso(minutes: int) -> str:
    return (BASE_TIME + timedelta(minutes=minutes)).isoformat().replace("+00:00", "Z")


def claude_user(session_id: str, text: str, minutes: int = 0) -> dict:
    return {
        "type": "user",
        "sessionId": session_id,
        "timestamp": iso(minutes),
        "message": {"role": "user", "content": text},
    }


def claude_assistant(session_id: str, blocks: list[dict] | str, minutes: int = 0) -> dict:
    if isinstance(blocks, str):
        blocks = [{"type": "text", "text": blocks}]
    return {
        "type": "assistant",
        "sessionId": session_id,
        "timestamp": iso(minutes),
        "message": {"role": "assistant", "content": blocks},
    }


def write_jsonl(path: Path, lines: list[dict], append: bool = False) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a" if append else "w") as f:
        for line in lines:
            f.write(json.dumps(line) + "\n")
    return path


def write_claude_session(
    claude_dir: Path, session_id: str, texts: list[str], project_dir: str = CLAUDE_PROJECT_DIR
) -> Path:
    """Write a Claude session alternating user and assistant turns, one minute apart."""
    lines = []
    for i, text in enumerate(texts):
        if i % 2 == 0:
            lines.append(claude_user(session_id, text, minutes=i))
        else:
            lines.append(claude_assistant(session_id, text, minutes=i))
    return write_jsonl(claude_dir / project_dir / f"{session_id}.jsonl", lines)


def make_record(
    doc_id: str,
    text: str,
    session_id: str = "s1",
    role: Role = Role.USER,
    ts: float = 1_700_000_000.0,
    project: str | None = "webapp",
    tool: str | None = None,
    source: Source = Source.CLAUDE,
    raw_offset: int = 0,
) -> Record:
    return Record(
        doc_id=doc_id,
        session_id=session_id,
        source=source,
        role=role,
        ts=ts,
        text=text,
        path=f"/logs/{session_id}.jsonl",
        raw_offset=raw_offset,
        project=project,
        tool=tool,
    )


def insert_records(conn, records: list[Record], generation: int = 1) -> None:
    for record in records:
        save_record(conn, record, generation)
        add_postings(conn, record)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    """Settings with an index root and log directories inside temp_dir."""
    claude_dir = temp_dir / "claude" / "projects"
    codex_dir = temp_dir / "codex"
    claude_dir.mkdir(parents=True)
    codex_dir.mkdir(parents=True)
    return Settings(
        root=temp_dir / "root",
        claude_dir=claude_dir,
        codex_dir=codex_dir,
        lock_timeout=0.2,
        sync_timeout=None,
        workers=2,
        embedding_batch_size=4,
    )


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def no_backoff(monkeypatch):
    """Make embedding retries immediate."""
    monkeypatch.setattr("logrecall.embeddings.RETRY_BACKOFF", 0.0)


@pytest.fixture
def sample_session_jsonl(temp_dir):
    """Create a sample Claude session file."""
    session_file = temp_dir / "projects" / CLAUDE_PROJECT_DIR / "test-session.jsonl"
    records = [
        claude_user("test-session-123", "How do I implement authentication?", minutes=0),
        claude_assistant(
            "test-session-123",
            [{"type": "text", "text": "For authentication, you can use JWT tokens..."}],
            minutes=1,
        ),
        claude_user("test-session-123", "Can you show me an example?", minutes=2),
        claude_assistant(
            "test-session-123",
            [
                {"type": "thinking", "thinking": "Let me think about a good example..."},
                {"type": "text", "text": "Here's an example of JWT authentication in Python..."},
                {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
            ],
            minutes=3,
        ),
        {
            "type": "user",
            "sessionId": "test-session-123",
            "timestamp": iso(4),
            "message": {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "toolu_1", "content": "auth.py\nmain.py"}
                ],
            },
        },
    ]
    return write_jsonl(session_file, records)


@pytest.fixture
def sample_codex_session(temp_dir):
    """Create a sample Codex rollout file."""
    path = temp_dir / "sessions" / "2024" / "01" / "15" / (
        "rollout-2024-01-15T10-00-00-0192aabb-cc11-7d22-8e33-445566778899.jsonl"
    )
    lines = [
        {
            "timestamp": iso(0),
            "type": "session_meta",
            "payload": {"id": "codex-session-1", "cwd": "/home/me/work/api"},
        },
        {
            "timestamp": iso(1),
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": "<environment_context>cwd</environment_context>"}],
            },
        },
        {
            "timestamp": iso(2),
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": "migrate the database schema"}],
            },
        },
        {
            "timestamp": iso(3),
            "type": "response_item",
            "payload": {
                "type": "function_call",
                "name": "shell",
                "call_id": "call_1",
                "arguments": "{\"command\": [\"alembic\", \"upgrade\"]}",
            },
        },
        {
            "timestamp": iso(4),
            "type": "response_item",
            "payload": {"type": "function_call_output", "call_id": "call_1", "output": "upgraded to head"},
        },
        {"timestamp": iso(5), "type": "event_msg", "payload": {"type": "token_count"}},
        {
            "timestamp": iso(6),
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": "The migration ran cleanly."}],
            },
        },
    ]
    return write_jsonl(path, lines)
