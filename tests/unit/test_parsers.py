"""Tests for the log parsers."""

import json
from pathlib import Path

import pytest
from conftest import claude_assistant, claude_user, iso, write_jsonl

from logrecall.models import LogFormat, Role, Source
from logrecall.output import format_ts
from logrecall.parsers import ParseCursor, extract_project_name, parse, parse_timestamp


def test_extract_project_name():
    """Test project name extraction from the encoded directory name."""
    path = Path("/home/me/.claude/projects/-Users-name-Code-myproject/session.jsonl")
    assert extract_project_name(path) == "myproject"


def test_parse_timestamp():
    """ISO strings, epoch seconds and epoch milliseconds all become epoch seconds."""
    assert parse_timestamp("2024-01-01T00:00:00Z") == 1704067200.0
    assert parse_timestamp("2024-01-01T00:00:00") == 1704067200.0
    assert parse_timestamp(1704067200) == 1704067200.0
    assert parse_timestamp(1704067200000) == 1704067200.0
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_parse_claude_session(sample_session_jsonl):
    """Each content block becomes its own record, numbered within its line."""
    records = list(parse(sample_session_jsonl, LogFormat.CLAUDE))

    assert [r.role for r in records] == [
        Role.USER,
        Role.ASSISTANT,
        Role.USER,
        Role.ASSISTANT,
        Role.ASSISTANT,
        Role.TOOL_USE,
        Role.TOOL_RESULT,
    ]
    assert all(r.session_id == "test-session-123" for r in records)
    assert all(r.source == Source.CLAUDE for r in records)
    assert all(r.project == "webapp" for r in records)

    thinking, text, tool_use = records[3:6]
    assert thinking.text == "Let me think about a good example..."
    assert thinking.raw_offset == text.raw_offset == tool_use.raw_offset
    assert [thinking.sub_index, text.sub_index, tool_use.sub_index] == [0, 1, 2]
    assert tool_use.text == 'Bash {"command": "ls"}'
    assert tool_use.tool == "Bash"


def test_tool_result_gets_tool_name(sample_session_jsonl):
    """A tool result is tagged with the tool that produced it."""
    records = list(parse(sample_session_jsonl, LogFormat.CLAUDE))
    result = records[-1]
    assert result.role == Role.TOOL_RESULT
    assert result.tool == "Bash"
    assert result.text == "auth.py\nmain.py"


def test_doc_ids_are_stable(sample_session_jsonl):
    """Parsing the same file twice yields the same ids."""
    first = [r.doc_id for r in parse(sample_session_jsonl, LogFormat.CLAUDE)]
    second = [r.doc_id for r in parse(sample_session_jsonl, LogFormat.CLAUDE)]
    assert first == second
    assert len(set(first)) == len(first)


def test_resume_matches_full_parse(sample_session_jsonl):
    """Parsing in two steps with carried state equals one full parse."""
    full = list(parse(sample_session_jsonl, LogFormat.CLAUDE))

    lines = sample_session_jsonl.read_bytes().splitlines(keepends=True)
    cut = len(b"".join(lines[:4]))
    cursor = ParseCursor(end=cut)
    head = list(parse(sample_session_jsonl, LogFormat.CLAUDE, cursor))
    assert cursor.offset == cut

    tail_cursor = ParseCursor(offset=cursor.offset, state=json.loads(json.dumps(cursor.state)))
    tail = list(parse(sample_session_jsonl, LogFormat.CLAUDE, tail_cursor))

    assert [r.doc_id for r in head + tail] == [r.doc_id for r in full]
    assert tail[-1].tool == "Bash"


def test_partial_trailing_line_is_not_consumed(temp_dir):
    """A line still being written is left for the next run."""
    path = write_jsonl(
        temp_dir / "p" / "s.jsonl",
        [claude_user("s", "first"), claude_user("s", "second")],
    )
    complete = path.stat().st_size
    with open(path, "a") as f:
        f.write('{"type": "user", "sessionId": "s"')

    cursor = ParseCursor()
    records = list(parse(path, LogFormat.CLAUDE, cursor))

    assert [r.text for r in records] == ["first", "second"]
    assert cursor.offset == complete


def test_malformed_line_is_skipped(temp_dir):
    """Invalid JSON is skipped with a warning and does not stop the parse."""
    path = temp_dir / "p" / "s.jsonl"
    path.parent.mkdir(parents=True)
    path.write_text(
        json.dumps(claude_user("s", "before")) + "\n"
        + "not json at all\n"
        + json.dumps(claude_user("s", "after")) + "\n"
    )

    cursor = ParseCursor()
    records = list(parse(path, LogFormat.CLAUDE, cursor))

    assert [r.text for r in records] == ["before", "after"]
    assert cursor.lines_parsed == 3
    assert cursor.offset == path.stat().st_size


def test_meta_and_snapshot_lines_are_skipped(temp_dir):
    """Meta messages and non-message line types produce no records."""
    meta = claude_user("s", "<command-name>/clear</command-name>")
    meta["isMeta"] = True
    path = write_jsonl(
        temp_dir / "p" / "s.jsonl",
        [{"type": "file-history-snapshot", "snapshot": {}}, meta, claude_user("s", "real question")],
    )
    records = list(parse(path, LogFormat.CLAUDE))
    assert [r.text for r in records] == ["real question"]


def test_claude_project_from_cwd(temp_dir):
    """The working directory recorded in the log wins over the folder name."""
    line = claude_user("s", "hello")
    line["cwd"] = "/Users/me/Code/billing-service"
    path = write_jsonl(temp_dir / "-Users-me-Code-other" / "s.jsonl", [line])
    (record,) = parse(path, LogFormat.CLAUDE)
    assert record.project == "billing-service"


def test_parse_codex_session(sample_codex_session):
    """Test rollout parsing: injected context is dropped, tool calls are paired."""
    records = list(parse(sample_codex_session, LogFormat.CODEX_SESSION))

    assert [r.role for r in records] == [Role.USER, Role.TOOL_USE, Role.TOOL_RESULT, Role.ASSISTANT]
    assert all(r.session_id == "codex-session-1" for r in records)
    assert all(r.source == Source.CODEX for r in records)
    assert all(r.project == "api" for r in records)

    user, call, output, answer = records
    assert user.text == "migrate the database schema"
    assert call.tool == "shell"
    assert call.text.startswith("shell ")
    assert output.tool == "shell"
    assert output.text == "upgraded to head"
    assert answer.text == "The migration ran cleanly."


def test_codex_session_id_from_file_name(temp_dir):
    """Without session metadata the id comes from the rollout file name."""
    path = write_jsonl(
        temp_dir / "rollout-2024-01-15T10-00-00-0192aabb-cc11-7d22-8e33-445566778899.jsonl",
        [{"type": "message", "role": "user", "content": [{"type": "input_text", "text": "hi"}]}],
    )
    (record,) = parse(path, LogFormat.CODEX_SESSION)
    assert record.session_id == "0192aabb-cc11-7d22-8e33-445566778899"


def test_parse_codex_history(temp_dir):
    """Each history line is one user prompt."""
    path = write_jsonl(
        temp_dir / "history.jsonl",
        [
            {"session_id": "h1", "ts": 1704067200, "text": "explain the retry loop"},
            {"session_id": "h1", "ts": 1704067260, "text": "   "},
            {"ts": 1704067320, "text": "no session"},
        ],
    )
    records = list(parse(path, LogFormat.CODEX_HISTORY))

    assert len(records) == 1
    assert records[0].role == Role.USER
    assert records[0].source == Source.CODEX
    assert records[0].ts == 1704067200.0
    assert records[0].text == "explain the retry loop"


@pytest.mark.parametrize("value", [1e20, -1e20, float("nan"), float("inf"), float("-inf")])
def test_parse_timestamp_rejects_unrepresentable_epochs(value):
    assert parse_timestamp(value) is None


def test_out_of_range_timestamp_falls_back_to_previous(temp_dir):
    """A line with an absurd epoch keeps the last good timestamp."""
    bad = claude_user("s", "second")
    bad["timestamp"] = 1e20
    path = write_jsonl(temp_dir / "p" / "s.jsonl", [claude_user("s", "first", minutes=3), bad])

    first, second = parse(path, LogFormat.CLAUDE)

    assert second.ts == first.ts
    assert format_ts(second.ts).startswith("2024-01-15T10:03")


@pytest.mark.parametrize(
    "bad_line",
    [
        claude_assistant("s", [{"type": "text", "text": 5}]),
        claude_assistant("s", [{"type": "thinking", "thinking": ["not", "text"]}]),
        claude_assistant("s", [{"type": "tool_use", "id": "t1", "name": 7, "input": {}}]),
        {"type": "user", "sessionId": "s", "timestamp": iso(1), "message": "flat string"},
        {
            "type": "user",
            "sessionId": "s",
            "timestamp": iso(1),
            "message": {"role": "user", "content": [{"type": "text", "text": {"nested": True}}]},
        },
    ],
)
def test_wrongly_typed_claude_line_is_skipped(temp_dir, bad_line):
    """Valid JSON with fields of the wrong type is skipped like invalid JSON."""
    path = write_jsonl(
        temp_dir / "p" / "s.jsonl",
        [claude_user("s", "before"), bad_line, claude_user("s", "after", minutes=2)],
    )
    cursor = ParseCursor()
    records = list(parse(path, LogFormat.CLAUDE, cursor))

    assert [r.text for r in records] == ["before", "after"]
    assert cursor.offset == path.stat().st_size


def test_bad_block_drops_the_whole_line(temp_dir):
    """A line is indexed entirely or not at all."""
    line = claude_assistant("s", [{"type": "text", "text": "good block"}, {"type": "text", "text": 5}])
    path = write_jsonl(temp_dir / "p" / "s.jsonl", [line, claude_user("s", "after", minutes=1)])

    records = list(parse(path, LogFormat.CLAUDE))

    assert [r.text for r in records] == ["after"]


def test_unhashable_tool_ids_are_ignored(temp_dir):
    """List-valued tool ids neither crash the parse nor pair results."""
    path = write_jsonl(
        temp_dir / "p" / "s.jsonl",
        [
            claude_assistant("s", [{"type": "tool_use", "id": ["x"], "name": "Read", "input": {}}]),
            {
                "type": "user",
                "sessionId": "s",
                "timestamp": iso(1),
                "message": {
                    "role": "user",
                    "content": [{"type": "tool_result", "tool_use_id": ["x"], "content": "file body"}],
                },
            },
        ],
    )
    call, result = parse(path, LogFormat.CLAUDE)
    assert call.tool == "Read"
    assert result.role == Role.TOOL_RESULT
    assert result.tool is None


@pytest.mark.parametrize(
    "bad_line",
    [
        {"timestamp": iso(1), "type": "session_meta", "payload": "x"},
        {"timestamp": iso(1), "type": "turn_context", "payload": ["cwd"]},
        {"timestamp": iso(1), "type": "response_item", "payload": 3},
        {
            "timestamp": iso(1),
            "type": "response_item",
            "payload": {"type": "function_call", "name": {"n": 1}, "call_id": "c", "arguments": "{}"},
        },
    ],
)
def test_wrongly_typed_codex_line_is_skipped(temp_dir, bad_line):
    user = {
        "timestamp": iso(2),
        "type": "response_item",
        "payload": {"type": "message", "role": "user", "content": [{"type": "input_text", "text": "after"}]},
    }
    path = write_jsonl(temp_dir / "rollout-x.jsonl", [bad_line, user])
    cursor = ParseCursor()

    records = list(parse(path, LogFormat.CODEX_SESSION, cursor))

    assert [r.text for r in records] == ["after"]
    assert cursor.offset == path.stat().st_size


def test_codex_output_with_list_call_id(temp_dir):
    path = write_jsonl(
        temp_dir / "rollout-x.jsonl",
        [
            {
                "timestamp": iso(1),
                "type": "response_item",
                "payload": {"type": "function_call_output", "call_id": ["c1"], "output": "done"},
            }
        ],
    )
    (record,) = parse(path, LogFormat.CODEX_SESSION)
    assert record.role == Role.TOOL_RESULT
    assert record.tool is None
    assert record.text == "done"
