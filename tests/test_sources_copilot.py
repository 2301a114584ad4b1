"""Tests for the Copilot CLI source."""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ai_sessions.config import Config
from ai_sessions.errors import SessionNotFound
from ai_sessions.sources.copilot import CopilotSource, decode_arguments, find_common_directory


def write_events(path: Path, events: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for event in events:
            f.write(json.dumps(event) + "\n")


@pytest.fixture
def sessions_dir(tmp_path: Path) -> Path:
    return tmp_path / ".copilot" / "session-state"


@pytest.fixture
def source(sessions_dir: Path) -> CopilotSource:
    return CopilotSource(sessions_dir)


@pytest.fixture
def sample_session(sessions_dir: Path) -> Path:
    """Create a Copilot session with a tool round trip."""
    path = sessions_dir / "3f2a9c1e.jsonl"
    write_events(
        path,
        [
            {
                "type": "session.start",
                "id": "e1",
                "timestamp": "2026-01-22T10:00:00.000Z",
                "data": {"sessionId": "3f2a9c1e", "startTime": "2026-01-22T10:00:00.000Z"},
            },
            {
                "type": "session.info",
                "id": "e2",
                "data": {
                    "infoType": "folder_trust",
                    "message": "Folder /home/user/webapp has been added to trusted folders.",
                },
            },
            {
                "type": "session.model_change",
                "id": "e3",
                "data": {"previousModel": "", "newModel": "claude-sonnet-4.5"},
            },
            {
                "type": "user.message",
                "id": "e4",
                "timestamp": "2026-01-22T10:00:05.000Z",
                "data": {"content": "List the routes\nin the app", "attachments": [{"path": "app.py"}]},
            },
            {
                "type": "assistant.message",
                "id": "e5",
                "timestamp": "2026-01-22T10:00:06.000Z",
                "data": {
                    "messageId": "m1",
                    "content": "Reading the router.",
                    "toolRequests": [
                        {"toolCallId": "call_1", "name": "view", "arguments": '{"path": "/home/user/webapp/routes.py"}'}
                    ],
                },
            },
            {
                "type": "tool.execution_complete",
                "id": "e6",
                "timestamp": "2026-01-22T10:00:07.000Z",
                "data": {"toolCallId": "call_1", "toolName": "view", "success": True, "result": "GET /health"},
            },
            {
                "type": "user.message",
                "id": "e7",
                "timestamp": "2026-01-22T10:00:08.000Z",
                "data": {"content": "Thanks"},
            },
        ],
    )
    return path


class TestHelpers:
    """Tests for module helpers."""

    def test_decode_arguments(self) -> None:
        """JSON strings are decoded, other values pass through."""
        assert decode_arguments('{"a": 1}') == {"a": 1}
        assert decode_arguments("not json") == "not json"
        assert decode_arguments({"a": 1}) == {"a": 1}

    def test_find_common_directory(self) -> None:
        """The common parent of file paths is the project guess."""
        assert find_common_directory([]) == ""
        assert find_common_directory(["/w/app/a.py"]) == "/w/app"
        assert find_common_directory(["/w/app/src/a.py", "/w/app/tests/b.py"]) == "/w/app"


class TestListSessions:
    """Tests for session listing."""

    def test_metadata(self, source: CopilotSource, sample_session: Path) -> None:
        """Listing reads id, start time, project and user messages."""
        sessions = source.list_sessions()

        assert len(sessions) == 1
        session = sessions[0]
        assert session.id == "3f2a9c1e"
        assert session.timestamp == datetime(2026, 1, 22, 10, 0, tzinfo=timezone.utc)
        assert session.project_path == "/home/user/webapp"
        assert session.first_message == "List the routes"
        assert session.user_message_count == 2
        assert session.file_path == str(sample_session)

    def test_project_from_tool_paths(self, source: CopilotSource, sessions_dir: Path) -> None:
        """Without a folder_trust event the project is inferred from tool paths."""
        write_events(
            sessions_dir / "abc.jsonl",
            [
                {"type": "session.start", "data": {"sessionId": "abc", "startTime": "2026-01-20T00:00:00Z"}},
                {"type": "tool.execution_start", "data": {"arguments": {"path": "/srv/api/main.py"}}},
                {"type": "tool.execution_start", "data": {"arguments": '{"path": "/srv/api/lib/db.py"}'}},
            ],
        )

        assert source.list_sessions()[0].project_path == "/srv/api"

    def test_project_filter(self, source: CopilotSource, sample_session: Path) -> None:
        """Only sessions of the requested project are listed."""
        assert len(source.list_sessions("/home/user/webapp")) == 1
        assert source.list_sessions("/home/user/other") == []

    def test_timestamp_falls_back_to_mtime(self, source: CopilotSource, sessions_dir: Path) -> None:
        """Sessions without a start time use the file's modification time."""
        path = sessions_dir / "untimed.jsonl"
        write_events(path, [{"type": "user.message", "data": {"content": "hello"}}])
        os.utime(path, (1767225600, 1767225600))

        assert source.list_sessions()[0].timestamp == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_wrong_typed_events_skipped(self, source: CopilotSource, sample_session: Path, sessions_dir: Path) -> None:
        """Events with wrong-typed fields do not hide this or other sessions."""
        write_events(
            sessions_dir / "mixed.jsonl",
            [
                {"type": "session.start", "data": {"sessionId": 5, "startTime": "2026-01-23T00:00:00Z"}},
                {"type": "session.info", "data": {"infoType": "folder_trust", "message": ["Folder /x"]}},
                {"type": "user.message", "data": "oops"},
                {"type": "user.message", "data": {"content": ["List", "the", "routes"]}},
                {"type": "user.message", "data": {"content": "real question"}},
            ],
        )

        sessions = {s.id: s for s in source.list_sessions()}

        assert set(sessions) == {"3f2a9c1e", "mixed"}
        mixed = sessions["mixed"]
        assert mixed.project_path == ""
        assert mixed.first_message == "real question"
        assert mixed.user_message_count == 1

    def test_missing_directory(self, tmp_path: Path) -> None:
        """A missing session directory lists nothing."""
        assert CopilotSource(tmp_path / "absent").list_sessions() == []

    def test_from_config(self, tmp_path: Path, sample_session: Path) -> None:
        """from_config reads ~/.copilot/session-state."""
        source = CopilotSource.from_config(Config(home=tmp_path))
        assert [s.id for s in source.list_sessions()] == ["3f2a9c1e"]


class TestGetSession:
    """Tests for reading messages."""

    def test_messages(self, source: CopilotSource, sample_session: Path) -> None:
        """Events become user, assistant and tool messages in order."""
        messages = source.get_session("3f2a9c1e")

        assert [m.role for m in messages] == ["user", "assistant", "tool", "user"]

        user = messages[0]
        assert user.metadata["model"] == "claude-sonnet-4.5"
        assert user.part_types == {"text": 1, "attachment": 1}
        assert user.non_text_parts == [{"path": "app.py"}]

        assistant = messages[1]
        assert assistant.id == "m1"
        assert assistant.content == "Reading the router."
        assert assistant.metadata["tool_calls"] == [
            {"id": "call_1", "name": "view", "arguments": {"path": "/home/user/webapp/routes.py"}}
        ]

        tool = messages[2]
        assert tool.content == "GET /health"
        assert tool.metadata["tool_call_id"] == "call_1"
        assert tool.metadata["success"] is True
        assert tool.part_types == {"text": 1, "tool_result": 1}

    def test_page_from_end(self, source: CopilotSource, sample_session: Path) -> None:
        """Reverse pages start at the newest message."""
        page = source.get_session_page("3f2a9c1e", 0, 3, from_end=True)

        assert page.total == 4
        assert page.resolved_page == 1
        assert [m.content for m in page.messages] == ["Thanks"]

    def test_failed_tool_is_error(self, source: CopilotSource, sessions_dir: Path) -> None:
        """Unsuccessful tool executions are marked as errors."""
        write_events(
            sessions_dir / "fail.jsonl",
            [{"type": "tool.execution_complete", "data": {"toolCallId": "c", "success": False, "result": {"code": 1}}}],
        )

        message = source.get_session("fail")[0]

        assert message.content == '{"code": 1}'
        assert message.non_text_parts[0]["is_error"] is True

    def test_session_id_not_matching_filename(self, source: CopilotSource, sessions_dir: Path) -> None:
        """Sessions are found by the id in their session.start event."""
        write_events(
            sessions_dir / "renamed.jsonl",
            [
                {"type": "session.start", "data": {"sessionId": "real-id"}},
                {"type": "user.message", "data": {"content": "hello"}},
            ],
        )

        assert source.get_session("real-id")[0].content == "hello"

    def test_wrong_typed_fields(self, source: CopilotSource, sessions_dir: Path) -> None:
        """Wrong-typed fields are read as empty values."""
        write_events(
            sessions_dir / "mixed.jsonl",
            [
                {"type": "session.model_change", "data": {"newModel": ["gpt"]}},
                {"type": "user.message", "data": {"content": ["a", "b"]}},
                {"type": "assistant.message", "data": {"content": "ok", "toolRequests": "oops"}},
                {"type": "assistant.message", "data": {"content": "again", "toolRequests": [5]}},
                {"type": "user.message", "data": {"content": "kept"}},
            ],
        )

        messages = source.get_session("mixed")

        assert [m.content for m in messages] == ["", "ok", "again", "kept"]
        assert "model" not in messages[0].metadata
        assert "tool_calls" not in messages[1].metadata
        assert messages[2].metadata["tool_calls"] == [{"id": "", "name": "", "arguments": None}]

    def test_unknown_session(self, source: CopilotSource, sample_session: Path) -> None:
        """Unknown ids raise SessionNotFound."""
        with pytest.raises(SessionNotFound):
            source.get_session("missing")
