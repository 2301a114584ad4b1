"""Source for GitHub Copilot CLI sessions.

Copilot CLI stores each session as a JSONL event stream at:
    ~/.copilot/session-state/<session-id>.jsonl

Each line is a JSON object with:
- type: event type (see below)
- data: event payload
- id, parentId: event identifiers
- timestamp: ISO 8601 timestamp

Event types used here:
- session.start: {sessionId, startTime, copilotVersion, ...}
- session.info: {infoType, message} - "folder_trust" messages name the project folder
- session.model_change: {previousModel, newModel}
- user.message: {content, attachments}
- assistant.message: {messageId, content, toolRequests: [{toolCallId, name, arguments}]}
- tool.execution_start: {toolCallId, toolName, arguments}
- tool.execution_complete: {toolCallId, toolName, success, result}
"""

import json
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Self

from ai_sessions.config import Config
from ai_sessions.errors import SessionNotFound
from ai_sessions.logging import get_logger
from ai_sessions.models import (
    Message,
    Part,
    Session,
    SessionPage,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    UnknownPart,
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
    iter_jsonl,
    parse_timestamp,
    resolve_project_path,
    sort_newest_first,
)

logger = get_logger("sources.copilot")

FOLDER_TRUST_RE = re.compile(r"Folder (.+) has been added to trusted folders")


def find_common_directory(paths: list[str]) -> str:
    """Longest common directory of a list of absolute file paths."""
    if not paths:
        return ""
    if len(paths) == 1:
        return os.path.dirname(paths[0])
    return os.path.commonpath([os.path.dirname(p) for p in paths])


def decode_arguments(arguments: Any) -> Any:
    """Tool arguments arrive either as an object or a JSON-encoded string."""
    if isinstance(arguments, str):
        try:
            return json.loads(arguments)
        except json.JSONDecodeError:
            return arguments
    return arguments


@dataclass
class _SessionScan:
    """Metadata gathered while reading a session file once."""

    session_id: str = ""
    start: datetime | None = None
    project_path: str = ""
    first_message: str = ""
    user_count: int = 0
    seen_paths: list[str] = field(default_factory=list)


class CopilotSource(SessionSource):
    """Source for Copilot CLI JSONL session files."""

    source_name = "copilot"

    def __init__(self, sessions_dir: Path) -> None:
        self._sessions_dir = sessions_dir

    @classmethod
    def from_config(cls, config: Config) -> Self:
        return cls(config.source_root(cls.source_name, ".copilot", "session-state"))

    def list_sessions(self, project_path: str = "", limit: int = 0) -> list[Session]:
        if not self._sessions_dir.exists():
            return []

        target = resolve_project_path(project_path)
        sessions: list[Session] = []

        for file_path in sorted(self._sessions_dir.glob("*.jsonl")):
            try:
                session = self._parse_session_metadata(file_path)
            except (OSError, UnicodeDecodeError, *MALFORMED_RECORD_ERRORS):
                logger.debug("Skipping unreadable session file: path=%s", file_path)
                continue

            if target and session.project_path != target:
                continue

            sessions.append(session)

        return sort_newest_first(sessions, limit)

    def _parse_session_metadata(self, file_path: Path) -> Session:
        scan = _SessionScan()

        for event in iter_jsonl(file_path):
            event_type = event.get("type")
            data = event.get("data")
            if not isinstance(data, dict):
                continue

            if event_type == "session.start":
                scan.session_id = as_str(data.get("sessionId")) or scan.session_id
                scan.start = parse_timestamp(data.get("startTime"))

            elif event_type == "session.info":
                if data.get("infoType") == "folder_trust":
                    match = FOLDER_TRUST_RE.search(as_str(data.get("message")))
                    if match:
                        scan.project_path = match.group(1)

            elif event_type == "user.message":
                content = as_str(data.get("content"))
                if content.strip():
                    scan.user_count += 1
                    if not scan.first_message:
                        scan.first_message = extract_first_line(content)

            elif event_type == "tool.execution_start":
                # File paths in tool arguments hint at the project directory
                arguments = decode_arguments(data.get("arguments"))
                if isinstance(arguments, dict):
                    path = arguments.get("path")
                    if isinstance(path, str) and path.startswith("/"):
                        scan.seen_paths.append(path)

        project_path = scan.project_path or find_common_directory(scan.seen_paths)

        return Session(
            id=scan.session_id or file_path.stem,
            source=self.source_name,
            timestamp=scan.start or file_mtime(file_path),
            project_path=project_path,
            first_message=scan.first_message,
            file_path=str(file_path),
            user_message_count=scan.user_count,
        )

    def _find_session_file(self, session_id: str) -> Path:
        direct = self._sessions_dir / f"{session_id}.jsonl"
        if direct.exists():
            return direct

        # Session ids from session.start events need not match the filename
        for session in self.list_sessions():
            if session.id == session_id:
                return Path(session.file_path)

        raise SessionNotFound(session_id)

    def _read_all_messages(self, file_path: Path) -> list[Message]:
        messages: list[Message] = []
        current_model = ""

        for event in iter_jsonl(file_path):
            data = event.get("data")
            if not isinstance(data, dict):
                continue

            if event.get("type") == "session.model_change":
                current_model = as_str(data.get("newModel")) or current_model
                continue

            try:
                message = self._build_message(event, data, current_model)
            except MALFORMED_RECORD_ERRORS:
                logger.debug("Skipping malformed event: path=%s id=%s", file_path, event.get("id"))
                continue
            if message is not None:
                messages.append(message)

        return messages

    def _build_message(self, event: dict[str, Any], data: dict[str, Any], current_model: str) -> Message | None:
        event_type = event.get("type")
        timestamp = parse_timestamp(event.get("timestamp"))
        event_id = as_str(event.get("id"))

        if event_type == "user.message":
            metadata: dict[str, Any] = {}
            if current_model:
                metadata["model"] = current_model
            parts: list[Part] = [TextPart(text=as_str(data.get("content")))]
            for attachment in as_list(data.get("attachments")):
                raw = attachment if isinstance(attachment, dict) else {"value": attachment}
                parts.append(UnknownPart(kind="attachment", raw=raw))
            return Message.from_parts("user", parts, timestamp=timestamp, metadata=metadata, message_id=event_id)

        if event_type == "assistant.message":
            metadata = {}
            if current_model:
                metadata["model"] = current_model
            parts = [TextPart(text=as_str(data.get("content")))]
            tool_calls = []
            for request in as_list(data.get("toolRequests")):
                request = as_dict(request)
                arguments = decode_arguments(request.get("arguments"))
                tool_calls.append({
                    "id": as_str(request.get("toolCallId")),
                    "name": as_str(request.get("name")),
                    "arguments": arguments,
                })
                parts.append(
                    ToolCallPart(
                        name=as_str(request.get("name")),
                        arguments=arguments,
                        call_id=as_str(request.get("toolCallId")),
                    )
                )
            if tool_calls:
                metadata["tool_calls"] = tool_calls
            return Message.from_parts(
                "assistant",
                parts,
                timestamp=timestamp,
                metadata=metadata,
                message_id=as_str(data.get("messageId")) or event_id,
            )

        if event_type == "tool.execution_complete":
            result = data.get("result")
            metadata = {
                "tool_call_id": as_str(data.get("toolCallId")),
                "tool_name": as_str(data.get("toolName")),
                "success": bool(data.get("success", False)),
                "result": result,
            }
            parts = [
                ToolResultPart(
                    output=result,
                    call_id=as_str(data.get("toolCallId")),
                    is_error=not data.get("success", False),
                )
            ]
            # Tool output doubles as searchable text
            if isinstance(result, str):
                parts.insert(0, TextPart(text=result))
            elif result is not None:
                parts.insert(0, TextPart(text=json.dumps(result)))
            return Message.from_parts("tool", parts, timestamp=timestamp, metadata=metadata, message_id=event_id)

        return None

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
