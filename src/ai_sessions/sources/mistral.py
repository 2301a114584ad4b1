"""Source for Mistral Vibe CLI sessions.

Mistral Vibe stores each session as a JSON file at:
    ~/.vibe/logs/session/session_*.json

Each file is a JSON object with:
- metadata.session_id: Session identifier
- metadata.start_time: Python isoformat timestamp (usually without timezone)
- metadata.environment.working_directory: Project path
- messages: Array of {role, content, tool_calls, tool_call_results}
  - tool_calls: [{id, type, function: {name, arguments (JSON string)}}]
  - tool_call_results: [{tool_call_id, content, is_error, timestamp}]

Messages carry no timestamps of their own.
"""

import json
from pathlib import Path
from typing import Any, Self

from ai_sessions.config import Config
from ai_sessions.errors import ParseFailure, SessionNotFound
from ai_sessions.logging import get_logger
from ai_sessions.models import (
    Message,
    Part,
    Session,
    SessionPage,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    extract_first_line,
)
from ai_sessions.pagination import paginate
from ai_sessions.sources.base import (
    MALFORMED_RECORD_ERRORS,
    SessionSource,
    as_dict,
    as_list,
    as_str,
    file_mtime,
    forward_window,
    parse_timestamp,
    read_json,
    resolve_project_path,
    sort_newest_first,
)

logger = get_logger("sources.mistral")


def load_session_file(path: Path) -> dict[str, Any]:
    """Read a session file, raising ParseFailure if it is not a session."""
    try:
        data = read_json(path)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ParseFailure(f"invalid session JSON: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ParseFailure(f"session file is not an object: {path}")
    return data


class MistralSource(SessionSource):
    """Source for Mistral Vibe JSON session files."""

    source_name = "mistral"

    def __init__(self, sessions_dir: Path) -> None:
        self._sessions_dir = sessions_dir

    @classmethod
    def from_config(cls, config: Config) -> Self:
        return cls(config.source_root(cls.source_name, ".vibe", "logs", "session"))

    def _session_files(self) -> list[Path]:
        if not self._sessions_dir.exists():
            return []
        return sorted(self._sessions_dir.glob("session_*.json"))

    def list_sessions(self, project_path: str = "", limit: int = 0) -> list[Session]:
        target = resolve_project_path(project_path)
        sessions: list[Session] = []

        for file_path in self._session_files():
            try:
                session = self._parse_session_metadata(file_path)
            except (ParseFailure, OSError, *MALFORMED_RECORD_ERRORS):
                logger.debug("Skipping unreadable session file: path=%s", file_path)
                continue

            if target and session.project_path != target:
                continue

            sessions.append(session)

        return sort_newest_first(sessions, limit)

    def _parse_session_metadata(self, file_path: Path) -> Session:
        data = load_session_file(file_path)
        metadata = as_dict(data.get("metadata"))
        environment = as_dict(metadata.get("environment"))

        first_message = ""
        user_count = 0
        for msg in as_list(data.get("messages")):
            if not isinstance(msg, dict) or msg.get("role") != "user":
                continue
            content = as_str(msg.get("content"))
            if not content.strip():
                continue
            user_count += 1
            if not first_message:
                first_message = extract_first_line(content)

        return Session(
            id=as_str(metadata.get("session_id")) or file_path.stem,
            source=self.source_name,
            timestamp=parse_timestamp(metadata.get("start_time")) or file_mtime(file_path),
            project_path=as_str(environment.get("working_directory")),
            first_message=first_message,
            file_path=str(file_path),
            user_message_count=user_count,
        )

    def _find_session_file(self, session_id: str) -> Path:
        # File names do not contain the full session id, so look inside each file
        for file_path in self._session_files():
            try:
                data = load_session_file(file_path)
            except (ParseFailure, OSError):
                continue
            if as_dict(data.get("metadata")).get("session_id") == session_id:
                return file_path
        raise SessionNotFound(session_id)

    def _read_all_messages(self, file_path: Path) -> list[Message]:
        data = load_session_file(file_path)
        messages: list[Message] = []

        for msg in as_list(data.get("messages")):
            if not isinstance(msg, dict):
                continue
            try:
                message = self._build_message(msg)
            except MALFORMED_RECORD_ERRORS:
                logger.debug("Skipping malformed message: path=%s", file_path)
                continue
            if message is not None:
                messages.append(message)

        return messages

    def _build_message(self, msg: dict[str, Any]) -> Message | None:
        role = as_str(msg.get("role")).strip().lower()
        if role == "system":
            return None

        parts: list[Part] = [TextPart(text=as_str(msg.get("content")))]
        metadata: dict[str, Any] = {}

        tool_calls = []
        for call in as_list(msg.get("tool_calls")):
            call = as_dict(call)
            function = as_dict(call.get("function"))
            tool_calls.append({
                "id": as_str(call.get("id")),
                "name": as_str(function.get("name")),
                "arguments": function.get("arguments", ""),
            })
            parts.append(
                ToolCallPart(
                    name=as_str(function.get("name")),
                    arguments=function.get("arguments", ""),
                    call_id=as_str(call.get("id")),
                )
            )
        if tool_calls:
            metadata["tool_calls"] = tool_calls

        tool_results = []
        for result in as_list(msg.get("tool_call_results")):
            result = as_dict(result)
            tool_results.append({
                "tool_call_id": as_str(result.get("tool_call_id")),
                "content": result.get("content", ""),
                "is_error": bool(result.get("is_error", False)),
            })
            parts.append(
                ToolResultPart(
                    output=result.get("content", ""),
                    call_id=as_str(result.get("tool_call_id")),
                    is_error=bool(result.get("is_error", False)),
                )
            )
        if tool_results:
            metadata["tool_results"] = tool_results

        return Message.from_parts(role, parts, metadata=metadata)

    def get_session(self, session_id: str, page: int = 0, page_size: int = 20) -> list[Message]:
        messages = self._read_all_messages(self._find_session_file(session_id))
        return forward_window(messages, page, page_size)

    def get_session_page(
        self,
        session_id: str,
        page: int,
        page_size: int,
        from_end: bool = False,
    ) -> SessionPage:
        messages = self._read_all_messages(self._find_session_file(session_id))
        return paginate(messages, page, page_size, from_end)
