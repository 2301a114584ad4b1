"""Source for Claude Code conversation transcripts.

Claude Code stores conversations as JSONL files at:
    ~/.claude/projects/<encoded-project-path>/<session-id>.jsonl

Each line is a JSON object with:
- type: "user", "assistant", "summary", or bookkeeping types
- message.role: "user" or "assistant"
- message.content: string or array of content blocks
  (text, tool_use, tool_result, thinking, image)
- timestamp: ISO 8601 timestamp
- uuid: Entry identifier
- cwd: Working directory (project path)
- summary: Conversation title (only on "summary" entries)
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Any, Self

from ai_sessions.config import Config
from ai_sessions.errors import SessionNotFound
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
    as_str,
    file_mtime,
    iter_jsonl,
    parse_timestamp,
    resolve_project_path,
    sort_newest_first,
    take_window,
)

logger = get_logger("sources.claude_code")


def classify_block(block: Any) -> Part:
    """Classify one Claude content block."""
    if isinstance(block, str):
        return TextPart(text=block)
    if not isinstance(block, dict):
        return UnknownPart(kind="unknown", raw={"value": block})

    block_type = block.get("type", "")
    if block_type == "text":
        return TextPart(text=as_str(block.get("text")))
    if block_type == "tool_use":
        return ToolCallPart(
            name=as_str(block.get("name")),
            arguments=block.get("input"),
            call_id=as_str(block.get("id")),
            raw=block,
        )
    if block_type == "tool_result":
        return ToolResultPart(
            output=block.get("content"),
            call_id=as_str(block.get("tool_use_id")),
            is_error=bool(block.get("is_error", False)),
            raw=block,
        )
    return UnknownPart(kind=as_str(block_type) or "unknown", raw=block)


def classify_content(content: str | list | None) -> list[Part]:
    """Split a message content field into parts."""
    if content is None:
        return []
    if isinstance(content, str):
        return [TextPart(text=content)]
    if isinstance(content, list):
        return [classify_block(block) for block in content]
    return []


def user_text(content: str | list | None) -> str:
    """Text typed by the user, ignoring tool results echoed back as user turns."""
    return "\n".join(p.text for p in classify_content(content) if isinstance(p, TextPart) and p.text)


class ClaudeCodeSource(SessionSource):
    """Source for Claude Code JSONL transcript files."""

    source_name = "claude_code"

    def __init__(self, projects_dir: Path) -> None:
        self._projects_dir = projects_dir

    @classmethod
    def from_config(cls, config: Config) -> Self:
        return cls(config.source_root(cls.source_name, ".claude", "projects"))

    def _session_files(self) -> list[Path]:
        if not self._projects_dir.exists():
            return []
        return sorted(self._projects_dir.glob("*/*.jsonl"))

    def list_sessions(self, project_path: str = "", limit: int = 0) -> list[Session]:
        target = resolve_project_path(project_path)
        sessions: list[Session] = []

        for file_path in self._session_files():
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
        project = ""
        summary = ""
        first_message = ""
        user_count = 0
        started = None

        for entry in iter_jsonl(file_path):
            entry_type = entry.get("type")

            if entry_type == "summary":
                summary = summary or as_str(entry.get("summary"))
                continue

            if entry_type not in ("user", "assistant"):
                continue

            project = project or as_str(entry.get("cwd"))
            started = started or parse_timestamp(entry.get("timestamp"))

            message = as_dict(entry.get("message"))
            if message.get("role") != "user":
                continue

            text = user_text(message.get("content"))
            if not text.strip():
                continue
            user_count += 1
            if not first_message:
                first_message = extract_first_line(text)

        return Session(
            id=file_path.stem,
            source=self.source_name,
            timestamp=started or file_mtime(file_path),
            project_path=project,
            first_message=first_message,
            summary=summary,
            file_path=str(file_path),
            user_message_count=user_count,
        )

    def _find_session_file(self, session_id: str) -> Path:
        if self._projects_dir.exists():
            for file_path in self._projects_dir.glob(f"*/{session_id}.jsonl"):
                return file_path
        raise SessionNotFound(session_id)

    def _iter_messages(self, file_path: Path) -> Iterator[Message]:
        for entry in iter_jsonl(file_path):
            if entry.get("type") not in ("user", "assistant"):
                continue
            try:
                message = self._build_message(entry)
            except MALFORMED_RECORD_ERRORS:
                logger.debug("Skipping malformed entry: path=%s uuid=%s", file_path, entry.get("uuid"))
                continue
            if message is not None:
                yield message

    def _build_message(self, entry: dict[str, Any]) -> Message | None:
        message = as_dict(entry.get("message"))
        role = as_str(message.get("role"))
        if not role:
            return None

        parts = classify_content(message.get("content"))
        if not parts:
            return None

        metadata: dict[str, Any] = {}
        if message.get("model"):
            metadata["model"] = message["model"]
        if message.get("usage"):
            metadata["tokens"] = message["usage"]
        tool_calls = [
            {"id": p.call_id, "name": p.name, "arguments": p.arguments}
            for p in parts
            if isinstance(p, ToolCallPart)
        ]
        if tool_calls:
            metadata["tool_calls"] = tool_calls
        tool_results = [
            {"tool_call_id": p.call_id, "content": p.output, "is_error": p.is_error}
            for p in parts
            if isinstance(p, ToolResultPart)
        ]
        if tool_results:
            metadata["tool_results"] = tool_results

        return Message.from_parts(
            role,
            parts,
            timestamp=parse_timestamp(entry.get("timestamp")),
            metadata=metadata,
            message_id=as_str(entry.get("uuid")),
        )

    def get_session(self, session_id: str, page: int = 0, page_size: int = 20) -> list[Message]:
        return take_window(self._iter_messages(self._find_session_file(session_id)), page, page_size)
