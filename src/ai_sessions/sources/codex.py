"""Source for Codex (OpenAI) conversation transcripts.

Codex stores conversations as JSONL files at:
    ~/.codex/sessions/<year>/<month>/<day>/rollout-*.jsonl
    ~/.codex/archived_sessions/rollout-*.jsonl

Each line is a JSON object with a type field:
- session_meta: Session metadata (id, cwd, timestamp)
- response_item: Model-visible items; payload.type is one of
  "message" (role + content blocks), "function_call" (name, arguments,
  call_id), "function_call_output" (call_id, output) or "reasoning"
- event_msg: UI event notifications (duplicates of response items, ignored)
- turn_context: Turn-level context information
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Self

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

logger = get_logger("sources.codex")

ROLE_MAPPING = {
    "user": "user",
    "assistant": "assistant",
    "developer": "system",
    "system": "system",
}

TEXT_BLOCK_TYPES = ("input_text", "output_text", "text")

# Prefixes of user turns injected by the Codex harness rather than typed
CONTEXT_PREFIXES = ("<environment_context>", "<user_instructions>", "# AGENTS.md")


def extract_session_id(filename: str) -> str:
    """Extract the session id from a rollout filename stem.

    Args:
        filename: The filename stem (without .jsonl extension)
                 Format: rollout-2026-01-22T10-52-33-019be668-4c23-7792-8b9c-7995e5bfdeee

    Returns:
        Session ID extracted from the filename
    """
    # rollout-YYYY-MM-DDTHH-MM-SS-<uuid>
    if filename.startswith("rollout-"):
        parts = filename[len("rollout-") :].split("-")
        if len(parts) >= 7:
            return "-".join(parts[5:])
    return filename


def classify_content(content: list | str | None) -> list[Part]:
    """Split a response_item message content field into parts."""
    if content is None:
        return []
    if isinstance(content, str):
        return [TextPart(text=content)]
    if not isinstance(content, list):
        return []

    parts: list[Part] = []
    for block in content:
        if isinstance(block, str):
            parts.append(TextPart(text=block))
        elif isinstance(block, dict):
            block_type = as_str(block.get("type"))
            if block_type in TEXT_BLOCK_TYPES:
                parts.append(TextPart(text=as_str(block.get("text")), kind=block_type))
            else:
                parts.append(UnknownPart(kind=block_type or "unknown", raw=block))
    return parts


def is_injected_context(text: str) -> bool:
    return text.lstrip().startswith(CONTEXT_PREFIXES)


class CodexSource(SessionSource):
    """Source for Codex rollout JSONL files."""

    source_name = "codex"

    def __init__(self, codex_dir: Path) -> None:
        self._codex_dir = codex_dir

    @classmethod
    def from_config(cls, config: Config) -> Self:
        return cls(config.source_root(cls.source_name, ".codex"))

    def _session_files(self) -> list[Path]:
        files: list[Path] = []
        sessions_dir = self._codex_dir / "sessions"
        if sessions_dir.exists():
            files.extend(sessions_dir.rglob("rollout-*.jsonl"))
        archived_dir = self._codex_dir / "archived_sessions"
        if archived_dir.exists():
            files.extend(archived_dir.glob("rollout-*.jsonl"))
        return sorted(files)

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
        session_id = extract_session_id(file_path.stem)
        project = ""
        started = None
        first_message = ""
        user_count = 0

        for entry in iter_jsonl(file_path):
            payload = as_dict(entry.get("payload"))

            if entry.get("type") == "session_meta":
                session_id = as_str(payload.get("id")) or session_id
                project = as_str(payload.get("cwd")) or project
                started = parse_timestamp(payload.get("timestamp")) or parse_timestamp(entry.get("timestamp"))
                continue

            if entry.get("type") != "response_item" or payload.get("type") != "message":
                continue
            if payload.get("role") != "user":
                continue

            text = "\n".join(
                p.text for p in classify_content(payload.get("content")) if isinstance(p, TextPart) and p.text
            )
            if not text.strip() or is_injected_context(text):
                continue
            user_count += 1
            if not first_message:
                first_message = extract_first_line(text)

        return Session(
            id=session_id,
            source=self.source_name,
            timestamp=started or file_mtime(file_path),
            project_path=project,
            first_message=first_message,
            file_path=str(file_path),
            user_message_count=user_count,
        )

    def _find_session_file(self, session_id: str) -> Path:
        files = self._session_files()
        for file_path in files:
            if extract_session_id(file_path.stem) == session_id:
                return file_path

        # Fall back to the id recorded in session_meta
        for file_path in files:
            for entry in iter_jsonl(file_path):
                if entry.get("type") == "session_meta":
                    if as_dict(entry.get("payload")).get("id") == session_id:
                        return file_path
                    break

        raise SessionNotFound(session_id)

    def _iter_messages(self, file_path: Path) -> Iterator[Message]:
        for entry in iter_jsonl(file_path):
            if entry.get("type") != "response_item":
                continue
            try:
                message = self._build_message(entry)
            except MALFORMED_RECORD_ERRORS:
                logger.debug("Skipping malformed response item: path=%s", file_path)
                continue
            if message is not None:
                yield message

    def _build_message(self, entry: dict) -> Message | None:
        payload = as_dict(entry.get("payload"))
        timestamp = parse_timestamp(entry.get("timestamp"))
        item_type = payload.get("type")

        if item_type == "message":
            role = ROLE_MAPPING.get(as_str(payload.get("role")))
            if role is None:
                return None
            parts = classify_content(payload.get("content"))
            if not parts:
                return None
            return Message.from_parts(role, parts, timestamp=timestamp, message_id=as_str(payload.get("id")))

        if item_type == "function_call":
            call = {
                "id": as_str(payload.get("call_id")),
                "name": as_str(payload.get("name")),
                "arguments": payload.get("arguments", ""),
            }
            part = ToolCallPart(name=call["name"], arguments=call["arguments"], call_id=call["id"], raw=payload)
            return Message.from_parts(
                "assistant",
                [part],
                timestamp=timestamp,
                metadata={"tool_calls": [call]},
                message_id=as_str(payload.get("id")),
            )

        if item_type == "function_call_output":
            output = payload.get("output")
            call_id = as_str(payload.get("call_id"))
            parts = [ToolResultPart(output=output, call_id=call_id, raw=payload)]
            if isinstance(output, str):
                parts.insert(0, TextPart(text=output))
            return Message.from_parts(
                "tool",
                parts,
                timestamp=timestamp,
                metadata={"tool_call_id": call_id},
            )

        return None

    def get_session(self, session_id: str, page: int = 0, page_size: int = 20) -> list[Message]:
        return take_window(self._iter_messages(self._find_session_file(session_id)), page, page_size)
