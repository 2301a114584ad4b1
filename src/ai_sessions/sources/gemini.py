"""Source for Gemini CLI conversation transcripts.

Gemini CLI stores conversations as JSON files at:
    ~/.gemini/tmp/<project_hash>/chats/session-*.json

Each file is a JSON object with:
- sessionId: UUID session identifier
- projectHash: SHA-256 of the project root path
- startTime: ISO 8601 timestamp
- lastUpdated: ISO 8601 timestamp
- messages: Array of message objects
  - id: Message UUID
  - timestamp: ISO 8601 timestamp
  - type: "user", "gemini", or "info"
  - content: String content (or a list of {text} parts)
  - toolCalls: Optional array of {id, name, args, result, status} (for gemini messages)
  - thoughts: Optional array of thinking process objects

The project path itself is never stored, only its hash, so project
filters are matched by hashing the requested path.
"""

import hashlib
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
    TextPart,
    ToolCallPart,
    ToolResultPart,
    UnknownPart,
    extract_first_line,
)
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
    sort_messages,
    sort_newest_first,
)

logger = get_logger("sources.gemini")


def project_hash(project_path: str) -> str:
    """Hash a project path the way Gemini CLI names its project directories."""
    return hashlib.sha256(project_path.encode()).hexdigest()


def map_role(msg_type: str | None) -> str | None:
    """Map Gemini message type to a normalized role.

    Args:
        msg_type: Gemini message type ("user", "gemini", "info", etc.)

    Returns:
        Role string, or None if the message should be skipped
    """
    if msg_type == "user":
        return "user"
    elif msg_type == "gemini":
        return "assistant"
    else:
        # Skip "info" and other non-conversation message types
        return None


def content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            as_str(block.get("text")) for block in content if isinstance(block, dict) and block.get("text")
        )
    return ""


def tool_output(tool_call: dict[str, Any]) -> Any:
    """Pull the function response output out of a tool call's result list."""
    outputs = []
    for result in as_list(tool_call.get("result")):
        if not isinstance(result, dict):
            continue
        response = as_dict(as_dict(result.get("functionResponse")).get("response"))
        if "output" in response:
            outputs.append(response["output"])
    if len(outputs) == 1:
        return outputs[0]
    return outputs or None


def load_session_file(path: Path) -> dict[str, Any]:
    try:
        data = read_json(path)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ParseFailure(f"invalid session JSON: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ParseFailure(f"session file is not an object: {path}")
    return data


class GeminiSource(SessionSource):
    """Source for Gemini CLI JSON session files."""

    source_name = "gemini_cli"

    def __init__(self, tmp_dir: Path) -> None:
        self._tmp_dir = tmp_dir

    @classmethod
    def from_config(cls, config: Config) -> Self:
        return cls(config.source_root(cls.source_name, ".gemini", "tmp"))

    def _session_files(self, project_hash_filter: str = "") -> list[Path]:
        if not self._tmp_dir.exists():
            return []
        pattern = f"{project_hash_filter or '*'}/chats/session-*.json"
        return sorted(self._tmp_dir.glob(pattern))

    def list_sessions(self, project_path: str = "", limit: int = 0) -> list[Session]:
        target = resolve_project_path(project_path)
        wanted_hash = project_hash(target) if target else ""
        sessions: list[Session] = []

        for file_path in self._session_files(wanted_hash):
            try:
                session = self._parse_session_metadata(file_path)
            except (ParseFailure, OSError, *MALFORMED_RECORD_ERRORS):
                logger.debug("Skipping unreadable session file: path=%s", file_path)
                continue

            if target:
                session.project_path = target
            sessions.append(session)

        return sort_newest_first(sessions, limit)

    def _parse_session_metadata(self, file_path: Path) -> Session:
        data = load_session_file(file_path)

        first_message = ""
        user_count = 0
        for msg in as_list(data.get("messages")):
            if not isinstance(msg, dict) or msg.get("type") != "user":
                continue
            text = content_text(msg.get("content"))
            if not text.strip():
                continue
            user_count += 1
            if not first_message:
                first_message = extract_first_line(text)

        return Session(
            id=as_str(data.get("sessionId")) or file_path.stem,
            source=self.source_name,
            timestamp=parse_timestamp(data.get("startTime")) or file_mtime(file_path),
            first_message=first_message,
            file_path=str(file_path),
            user_message_count=user_count,
        )

    def _find_session_file(self, session_id: str) -> Path:
        # Filenames carry a short id prefix only, so match on the sessionId field
        for file_path in self._session_files():
            try:
                data = load_session_file(file_path)
            except (ParseFailure, OSError):
                continue
            if data.get("sessionId") == session_id:
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
                logger.debug("Skipping malformed message: path=%s id=%s", file_path, msg.get("id"))
                continue
            if message is not None:
                messages.append(message)

        return sort_messages(messages)

    def _build_message(self, msg: dict[str, Any]) -> Message | None:
        role = map_role(msg.get("type"))
        if role is None:
            return None

        parts: list[Part] = [TextPart(text=content_text(msg.get("content")))]
        metadata: dict[str, Any] = {}
        if msg.get("model"):
            metadata["model"] = msg["model"]
        if msg.get("tokens"):
            metadata["tokens"] = msg["tokens"]

        for thought in as_list(msg.get("thoughts")):
            raw = thought if isinstance(thought, dict) else {"value": thought}
            parts.append(UnknownPart(kind="thought", raw=raw))

        tool_calls = []
        for call in as_list(msg.get("toolCalls")):
            if not isinstance(call, dict):
                continue
            call_id = as_str(call.get("id"))
            name = as_str(call.get("name"))
            tool_calls.append({"id": call_id, "name": name, "arguments": call.get("args")})
            parts.append(ToolCallPart(name=name, arguments=call.get("args"), call_id=call_id))
            if call.get("result"):
                parts.append(
                    ToolResultPart(
                        output=tool_output(call),
                        call_id=call_id,
                        is_error=call.get("status") == "error",
                    )
                )
        if tool_calls:
            metadata["tool_calls"] = tool_calls

        return Message.from_parts(
            role,
            parts,
            timestamp=parse_timestamp(msg.get("timestamp")),
            metadata=metadata,
            message_id=as_str(msg.get("id")),
        )

    def get_session(self, session_id: str, page: int = 0, page_size: int = 20) -> list[Message]:
        messages = self._read_all_messages(self._find_session_file(session_id))
        return forward_window(messages, page, page_size)
