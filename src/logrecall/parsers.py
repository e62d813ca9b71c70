"""JSONL log parsers for Claude Code and Codex."""

import json
import logging
import math
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from logrecall.errors import IngestError
from logrecall.models import LogFormat, Record, Role, make_doc_id

log = logging.getLogger(__name__)

# Truncate large tool outputs
TOOL_RESULT_MAX_CHARS = 4000

# Tool-name lookups kept across appends
MAX_TRACKED_TOOL_IDS = 256

CODEX_INJECTED_PREFIXES = ("<environment_context>", "<user_instructions>")


@dataclass
class ParseCursor:
    """Where a parse starts and stops, plus state carried between runs."""

    offset: int = 0
    end: int | None = None
    state: dict[str, Any] = field(default_factory=dict)
    lines_parsed: int = 0


@dataclass
class _Line:
    data: dict[str, Any]
    offset: int
    ts: float


def parse_timestamp(value: Any) -> float | None:
    """Parse an ISO-8601 string or epoch number into seconds since epoch.

    Returns None for anything that is not a representable point in time,
    including NaN, infinities and epochs outside the datetime range.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        # Millisecond epochs
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
        return seconds
    if isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    return None


def extract_project_name(path: Path) -> str:
    """Extract project name from a Claude session path.

    Path format: ~/.claude/projects/-Users-name-Code-project/session.jsonl
    Returns: project (last component of original path)
    """
    encoded_path = path.parent.name
    parts = encoded_path.split("-")
    meaningful_parts = [p for p in parts if p and p not in ("Users", "home")]
    if meaningful_parts:
        return meaningful_parts[-1]
    return encoded_path


def _project_from_cwd(cwd: Any) -> str | None:
    if isinstance(cwd, str) and cwd.strip():
        name = Path(cwd.rstrip("/")).name
        return name or None
    return None


def _object(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise IngestError(f"{what} is not a JSON object")
    return value


def _optional_str(value: Any, what: str) -> str | None:
    if value is not None and not isinstance(value, str):
        raise IngestError(f"{what} is not a string")
    return value


def _tool_name(value: Any) -> str:
    return _optional_str(value, "tool name") or "unknown"


def _remember_tool(state: dict[str, Any], tool_id: Any, name: str) -> None:
    if not isinstance(tool_id, str):
        return
    tools = state.setdefault("tools", {})
    tools[tool_id] = name
    while len(tools) > MAX_TRACKED_TOOL_IDS:
        tools.pop(next(iter(tools)))


def _lookup_tool(state: dict[str, Any], tool_id: Any) -> str | None:
    if not isinstance(tool_id, str):
        return None
    return state.get("tools", {}).get(tool_id)


def _block_text(content: Any) -> str:
    """Flatten a string or list of text blocks into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
        return "\n".join(p for p in parts if p)
    return ""


def _iter_lines(path: Path, cursor: ParseCursor) -> Iterator[_Line]:
    """Yield decoded JSON objects for every complete line after cursor.offset.

    cursor.offset is advanced past each consumed line, so after exhaustion it
    is the watermark for the next run. A trailing line without a newline is
    left unconsumed.
    """
    state = cursor.state
    with open(path, "rb") as f:
        f.seek(cursor.offset)
        offset = cursor.offset
        while cursor.end is None or offset < cursor.end:
            raw = f.readline()
            if not raw or not raw.endswith(b"\n"):
                break
            if cursor.end is not None and offset + len(raw) > cursor.end:
                break
            line_offset = offset
            offset += len(raw)
            cursor.lines_parsed += 1

            decoded = None
            line = raw.strip()
            if line:
                try:
                    decoded = _decode_line(line, line_offset, state)
                except IngestError as e:
                    log.warning("%s: skipping line at byte %d: %s", path, line_offset, e)
            if decoded is not None:
                yield decoded
            cursor.offset = offset


def _decode_line(line: bytes, offset: int, state: dict[str, Any]) -> _Line:
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise IngestError(f"invalid JSON ({e})") from e
    if not isinstance(data, dict):
        raise IngestError("record is not a JSON object")

    ts = parse_timestamp(data.get("timestamp", data.get("ts")))
    if ts is None:
        ts = state.get("last_ts", 0.0)
    else:
        state["last_ts"] = ts
    return _Line(data=data, offset=offset, ts=ts)


class _Emitter:
    """Builds records for one line, numbering them by position in the line."""

    def __init__(self, fmt: LogFormat, path: str, line: _Line, session_id: str, project: str | None):
        self.fmt = fmt
        self.path = path
        self.line = line
        self.session_id = session_id
        self.project = project
        self.records: list[Record] = []

    def add(self, role: Role, text: Any, tool: str | None = None) -> None:
        if text is None:
            return
        if not isinstance(text, str):
            raise IngestError(f"{role.value} text is not a string")
        if not text.strip():
            return
        sub_index = len(self.records)
        source = self.fmt.source
        self.records.append(
            Record(
                doc_id=make_doc_id(source, self.path, self.session_id, self.line.offset, sub_index),
                session_id=self.session_id,
                source=source,
                role=role,
                ts=self.line.ts,
                text=text,
                path=self.path,
                raw_offset=self.line.offset,
                sub_index=sub_index,
                project=self.project,
                tool=tool,
            )
        )


LineHandler = Callable[[Path, _Line, dict[str, Any]], list[Record]]


def _parse_lines(path: Path, cursor: ParseCursor, handle: LineHandler) -> Iterator[Record]:
    """Run a line handler over every complete line, skipping malformed ones.

    A line's records are only yielded once the whole line has been handled,
    so a bad block never leaves half a line in the index.
    """
    for line in _iter_lines(path, cursor):
        try:
            records = handle(path, line, cursor.state)
        except IngestError as e:
            log.warning("%s: skipping line at byte %d: %s", path, line.offset, e)
            continue
        yield from records


def _claude_line(path: Path, line: _Line, state: dict[str, Any]) -> list[Record]:
    record = line.data
    record_type = record.get("type")

    session_id = record.get("sessionId")
    if isinstance(session_id, str) and session_id:
        state["session_id"] = session_id
    project = _project_from_cwd(record.get("cwd"))
    if project:
        state["project"] = project

    if record_type not in ("user", "assistant") or record.get("isMeta"):
        # Skip file-history-snapshot, summary and other types
        return []

    msg_data = _object(record.get("message"), "message")
    emit = _Emitter(
        LogFormat.CLAUDE,
        str(path),
        line,
        state.get("session_id", path.stem),
        state.get("project", extract_project_name(path)),
    )
    content = msg_data.get("content", "")

    if record_type == "user":
        if isinstance(content, str):
            emit.add(Role.USER, content)
        elif isinstance(content, list):
            for block in content:
                if not isinstance(block, dict):
                    continue
                block_type = block.get("type")
                if block_type == "text":
                    emit.add(Role.USER, block.get("text"))
                elif block_type == "tool_result":
                    result = _block_text(block.get("content", ""))
                    tool = _lookup_tool(state, block.get("tool_use_id"))
                    emit.add(Role.TOOL_RESULT, result[:TOOL_RESULT_MAX_CHARS], tool=tool)
        return emit.records

    if not isinstance(content, list):
        content = [{"type": "text", "text": content}] if isinstance(content, str) else []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            emit.add(Role.ASSISTANT, block.get("text"))
        elif block_type == "thinking":
            emit.add(Role.ASSISTANT, block.get("thinking"))
        elif block_type == "tool_use":
            # Include tool name and input as searchable content
            tool_name = _tool_name(block.get("name"))
            _remember_tool(state, block.get("id"), tool_name)
            input_json = json.dumps(block.get("input", {}), sort_keys=True)
            emit.add(Role.TOOL_USE, f"{tool_name} {input_json}", tool=tool_name)
    return emit.records


def parse_claude(path: Path, cursor: ParseCursor) -> Iterator[Record]:
    """Parse a Claude Code session file."""
    return _parse_lines(path, cursor, _claude_line)


def _codex_session_id_from_name(path: Path) -> str:
    # rollout-2025-01-15T10-00-00-<uuid>.jsonl
    parts = path.stem.split("-")
    if len(parts) >= 5:
        return "-".join(parts[-5:])
    return path.stem


def _codex_line(path: Path, line: _Line, state: dict[str, Any]) -> list[Record]:
    data = line.data
    line_type = data.get("type")

    if line_type == "session_meta":
        payload = _object(data.get("payload") or {}, "session_meta payload")
        session_id = payload.get("id")
        if isinstance(session_id, str) and session_id:
            state["session_id"] = session_id
        project = _project_from_cwd(payload.get("cwd"))
        if project:
            state["project"] = project
        return []

    if line_type == "turn_context":
        payload = _object(data.get("payload") or {}, "turn_context payload")
        project = _project_from_cwd(payload.get("cwd"))
        if project:
            state["project"] = project
        return []

    if line_type == "response_item":
        item = _object(data.get("payload"), "response_item payload")
    elif line_type is None and "id" in data and "instructions" in data:
        # Legacy first line: bare session metadata
        if isinstance(data["id"], str) and data["id"]:
            state["session_id"] = data["id"]
        return []
    elif line_type in ("message", "function_call", "function_call_output",
                       "custom_tool_call", "custom_tool_call_output"):
        item = data
    else:
        # event_msg, reasoning, compacted and friends
        return []

    emit = _Emitter(
        LogFormat.CODEX_SESSION,
        str(path),
        line,
        state.get("session_id") or _codex_session_id_from_name(path),
        state.get("project"),
    )
    item_type = item.get("type")

    if item_type == "message":
        role = item.get("role")
        text = _block_text(item.get("content"))
        if role == "user":
            if not text.lstrip().startswith(CODEX_INJECTED_PREFIXES):
                emit.add(Role.USER, text)
        elif role == "assistant":
            emit.add(Role.ASSISTANT, text)

    elif item_type in ("function_call", "custom_tool_call"):
        tool_name = _tool_name(item.get("name"))
        _remember_tool(state, item.get("call_id"), tool_name)
        arguments = item.get("arguments", item.get("input", ""))
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, sort_keys=True)
        emit.add(Role.TOOL_USE, f"{tool_name} {arguments}", tool=tool_name)

    elif item_type in ("function_call_output", "custom_tool_call_output"):
        output = item.get("output", "")
        if isinstance(output, dict):
            output = output.get("content") or output.get("output") or ""
        output = _block_text(output)
        tool = _lookup_tool(state, item.get("call_id"))
        emit.add(Role.TOOL_RESULT, output[:TOOL_RESULT_MAX_CHARS], tool=tool)

    return emit.records


def parse_codex_session(path: Path, cursor: ParseCursor) -> Iterator[Record]:
    """Parse a Codex rollout session file (current and legacy layouts)."""
    return _parse_lines(path, cursor, _codex_line)


def _history_line(path: Path, line: _Line, state: dict[str, Any]) -> list[Record]:
    data = line.data
    session_id = data.get("session_id")
    text = data.get("text")
    if not isinstance(session_id, str) or not session_id or not isinstance(text, str):
        raise IngestError("missing session_id or text")
    emit = _Emitter(LogFormat.CODEX_HISTORY, str(path), line, session_id, None)
    emit.add(Role.USER, text)
    return emit.records


def parse_codex_history(path: Path, cursor: ParseCursor) -> Iterator[Record]:
    """Parse ~/.codex/history.jsonl: one user prompt per line."""
    return _parse_lines(path, cursor, _history_line)


PARSERS: dict[LogFormat, Callable[[Path, ParseCursor], Iterator[Record]]] = {
    LogFormat.CLAUDE: parse_claude,
    LogFormat.CODEX_SESSION: parse_codex_session,
    LogFormat.CODEX_HISTORY: parse_codex_history,
}


def parse(path: Path, fmt: LogFormat, cursor: ParseCursor | None = None) -> Iterator[Record]:
    """Lazily parse records from a log file, resuming at cursor.offset."""
    if cursor is None:
        cursor = ParseCursor()
    return PARSERS[fmt](path, cursor)
