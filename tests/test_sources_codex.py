"""Tests for the Codex source."""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ai_sessions.config import Config
from ai_sessions.errors import SessionNotFound
from ai_sessions.models import TextPart
from ai_sessions.search import SearchIndex
from ai_sessions.service import SessionService
from ai_sessions.sources.base import SourceRegistry
from ai_sessions.sources.codex import CodexSource, classify_content, extract_session_id, is_injected_context

SESSION_ID = "019be668-4c23-7792-8b9c-7995e5bfdeee"


def write_jsonl(path: Path, lines: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for line in lines:
            f.write(json.dumps(line) + "\n")


@pytest.fixture
def codex_dir(tmp_path: Path) -> Path:
    return tmp_path / ".codex"


@pytest.fixture
def source(codex_dir: Path) -> CodexSource:
    return CodexSource(codex_dir)


@pytest.fixture
def sample_session(codex_dir: Path) -> Path:
    """Create a Codex rollout file."""
    path = codex_dir / "sessions" / "2026" / "01" / "22" / f"rollout-2026-01-22T10-52-33-{SESSION_ID}.jsonl"
    write_jsonl(
        path,
        [
            {
                "timestamp": "2026-01-22T15:52:33.575Z",
                "type": "session_meta",
                "payload": {"id": SESSION_ID, "timestamp": "2026-01-22T15:52:33.571Z", "cwd": "/home/user/project"},
            },
            {
                "timestamp": "2026-01-22T15:52:33.600Z",
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "developer",
                    "content": [{"type": "input_text", "text": "Sandbox rules"}],
                },
            },
            {
                "timestamp": "2026-01-22T15:52:33.700Z",
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": "<environment_context>\n  <cwd>/home/user/project</cwd>"}],
                },
            },
            {
                "timestamp": "2026-01-22T15:52:33.740Z",
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": "Help me debug this code."}],
                },
            },
            {
                "timestamp": "2026-01-22T15:52:33.740Z",
                "type": "event_msg",
                "payload": {"type": "user_message", "message": "Help me debug this code."},
            },
            {
                "timestamp": "2026-01-22T15:52:38.745Z",
                "type": "response_item",
                "payload": {"type": "reasoning", "summary": [{"type": "summary_text", "text": "Thinking"}]},
            },
            {
                "timestamp": "2026-01-22T15:52:39.000Z",
                "type": "response_item",
                "payload": {
                    "type": "function_call",
                    "name": "shell",
                    "arguments": '{"command": ["pytest"]}',
                    "call_id": "call_abc",
                },
            },
            {
                "timestamp": "2026-01-22T15:52:40.000Z",
                "type": "response_item",
                "payload": {"type": "function_call_output", "call_id": "call_abc", "output": "1 failed"},
            },
            {
                "timestamp": "2026-01-22T15:52:41.000Z",
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": "The issue is in line 42."}],
                },
            },
        ],
    )
    return path


class TestHelpers:
    """Tests for module helpers."""

    def test_extract_session_id(self) -> None:
        """The uuid is taken from the rollout filename."""
        assert extract_session_id(f"rollout-2026-01-22T10-52-33-{SESSION_ID}") == SESSION_ID

    def test_extract_session_id_unknown_format(self) -> None:
        """Other filenames are returned unchanged."""
        assert extract_session_id("custom-session") == "custom-session"

    def test_classify_content(self) -> None:
        """Text block kinds are kept, others become UnknownPart."""
        parts = classify_content([{"type": "output_text", "text": "a"}, {"type": "input_image", "url": "x"}])
        assert [p.kind for p in parts] == ["output_text", "input_image"]

    def test_classify_content_wrong_types(self) -> None:
        """Content that is neither a string nor a list yields no parts."""
        assert classify_content(5) == []
        assert classify_content({"type": "output_text"}) == []
        assert classify_content([{"type": "output_text", "text": 7}]) == [TextPart(text="", kind="output_text")]

    def test_is_injected_context(self) -> None:
        """Harness-injected user turns are recognized."""
        assert is_injected_context("  <user_instructions>be brief</user_instructions>")
        assert not is_injected_context("Help me")


class TestListSessions:
    """Tests for session listing."""

    def test_metadata(self, source: CodexSource, sample_session: Path) -> None:
        """Metadata comes from session_meta and typed user messages."""
        sessions = source.list_sessions()

        assert len(sessions) == 1
        session = sessions[0]
        assert session.id == SESSION_ID
        assert session.project_path == "/home/user/project"
        assert session.timestamp == datetime(2026, 1, 22, 15, 52, 33, 571000, tzinfo=timezone.utc)
        assert session.first_message == "Help me debug this code."
        assert session.user_message_count == 1

    def test_archived_sessions_included(self, source: CodexSource, sample_session: Path, codex_dir: Path) -> None:
        """Archived rollouts are listed too."""
        write_jsonl(
            codex_dir / "archived_sessions" / "rollout-2025-12-01T00-00-00-aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee.jsonl",
            [{"type": "session_meta", "payload": {"id": "old", "timestamp": "2025-12-01T00:00:00Z", "cwd": "/old"}}],
        )

        assert [s.id for s in source.list_sessions()] == [SESSION_ID, "old"]

    def test_project_filter(self, source: CodexSource, sample_session: Path) -> None:
        """Sessions are filtered by cwd."""
        assert source.list_sessions("/somewhere/else") == []

    def test_timestamp_falls_back_to_mtime(self, source: CodexSource, codex_dir: Path) -> None:
        """Rollouts without any timestamp use the file's modification time."""
        path = codex_dir / "sessions" / "rollout-untimed.jsonl"
        write_jsonl(path, [{"type": "session_meta", "payload": {"id": "untimed", "cwd": "/home/user/project"}}])
        os.utime(path, (1767225600, 1767225600))

        assert source.list_sessions()[0].timestamp == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_wrong_typed_records_skipped(self, source: CodexSource, sample_session: Path, codex_dir: Path) -> None:
        """Wrong-typed payloads are skipped without hiding other sessions."""
        write_jsonl(
            codex_dir / "sessions" / "rollout-mixed.jsonl",
            [
                {"type": "session_meta", "payload": "oops"},
                {"type": "session_meta", "payload": {"id": 5, "cwd": ["/x"], "timestamp": "2026-01-23T00:00:00Z"}},
                {"type": "response_item", "payload": {"type": "message", "role": "user", "content": 5}},
                {"type": "response_item", "payload": {"type": "message", "role": "user", "content": "real question"}},
            ],
        )

        sessions = {s.id: s for s in source.list_sessions()}

        assert set(sessions) == {SESSION_ID, "rollout-mixed"}
        mixed = sessions["rollout-mixed"]
        assert mixed.project_path == ""
        assert mixed.first_message == "real question"
        assert mixed.user_message_count == 1

    def test_from_config(self, tmp_path: Path, sample_session: Path) -> None:
        """from_config reads ~/.codex."""
        assert len(CodexSource.from_config(Config(home=tmp_path)).list_sessions()) == 1


class TestGetSession:
    """Tests for reading messages."""

    def test_messages(self, source: CodexSource, sample_session: Path) -> None:
        """Only response items become messages."""
        messages = source.get_session(SESSION_ID)

        assert [m.role for m in messages] == ["system", "user", "user", "assistant", "tool", "assistant"]
        assert messages[2].content == "Help me debug this code."

        call = messages[3]
        assert call.metadata["tool_calls"] == [
            {"id": "call_abc", "name": "shell", "arguments": '{"command": ["pytest"]}'}
        ]
        assert call.part_types == {"tool_call": 1}

        output = messages[4]
        assert output.content == "1 failed"
        assert output.metadata == {"tool_call_id": "call_abc"}

    def test_page_window(self, source: CodexSource, sample_session: Path) -> None:
        """Forward pages slice the message stream."""
        page = source.get_session(SESSION_ID, page=1, page_size=4)
        assert [m.content for m in page] == ["1 failed", "The issue is in line 42."]

    def test_found_by_session_meta_id(self, source: CodexSource, codex_dir: Path) -> None:
        """Files whose name carries no uuid are matched by session_meta."""
        write_jsonl(
            codex_dir / "sessions" / "rollout-custom.jsonl",
            [
                {"type": "session_meta", "payload": {"id": "meta-id"}},
                {"type": "response_item", "payload": {"type": "message", "role": "user", "content": "hi"}},
            ],
        )

        assert source.get_session("meta-id")[0].content == "hi"

    def test_wrong_typed_items_skipped(self, source: CodexSource, codex_dir: Path) -> None:
        """Response items of the wrong shape do not stop the read."""
        write_jsonl(
            codex_dir / "sessions" / "rollout-mixed.jsonl",
            [
                {"type": "session_meta", "payload": {"id": "mixed"}},
                {"type": "response_item", "payload": ["message"]},
                {"type": "response_item", "payload": {"type": "message", "role": ["user"], "content": "lost"}},
                {"type": "response_item", "payload": {"type": "message", "role": "assistant", "content": 5}},
                {"type": "response_item", "payload": {"type": "function_call", "name": 3, "call_id": None}},
                {"type": "response_item", "payload": {"type": "message", "role": "user", "content": "kept"}},
            ],
        )

        messages = source.get_session("mixed")

        assert [m.role for m in messages] == ["assistant", "user"]
        assert messages[0].metadata["tool_calls"] == [{"id": "", "name": "", "arguments": ""}]
        assert messages[1].content == "kept"

    def test_unknown_session(self, source: CodexSource, sample_session: Path) -> None:
        """Unknown ids raise SessionNotFound."""
        with pytest.raises(SessionNotFound):
            source.get_session("missing")


class TestIndexedSearch:
    """Tests for searching a Codex corpus through the service."""

    def test_malformed_session_does_not_block_search(self, source: CodexSource, codex_dir: Path, tmp_path: Path) -> None:
        """A session with a wrong-typed item is indexed without its bad item."""
        write_jsonl(
            codex_dir / "sessions" / "rollout-good.jsonl",
            [
                {"type": "session_meta", "payload": {"id": "good", "timestamp": "2026-01-22T10:00:00Z"}},
                {"type": "response_item", "payload": {"type": "message", "role": "user", "content": "find the needle"}},
            ],
        )
        write_jsonl(
            codex_dir / "sessions" / "rollout-bad.jsonl",
            [
                {"type": "session_meta", "payload": {"id": "bad", "timestamp": "2026-01-22T11:00:00Z"}},
                {"type": "response_item", "payload": {"type": "message", "role": "user", "content": "a question"}},
                {"type": "response_item", "payload": {"type": "message", "role": "assistant", "content": 5}},
            ],
        )
        registry = SourceRegistry()
        registry.register(source)
        service = SessionService(registry, SearchIndex(tmp_path / "search.db"))

        assert [r.session.id for r in service.search("needle")] == ["good"]
        assert service.refresh_index() == {"checked": 2, "indexed": 0, "failed": 0}
