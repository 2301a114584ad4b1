"""Base source interface, pagination capability and registry."""

import json
import os
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone
from itertools import islice
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ai_sessions.errors import SessionsError, SourceNotFound
from ai_sessions.logging import get_logger
from ai_sessions.models import Message, Session, SessionPage

logger = get_logger("sources")

# Page size used when a caller needs every message of a session
FULL_SESSION_PAGE_SIZE = 100_000

# Raised by records that are valid JSON but do not have the expected shape
MALFORMED_RECORD_ERRORS = (AttributeError, KeyError, TypeError, ValueError)

__all__ = [
    "PaginatedSource",
    "SessionSource",
    "SourceRegistry",
    "MALFORMED_RECORD_ERRORS",
    "as_dict",
    "as_list",
    "as_str",
    "file_mtime",
    "forward_window",
    "iter_jsonl",
    "parse_timestamp",
    "read_json",
    "resolve_project_path",
    "sort_messages",
    "sort_newest_first",
    "take_window",
    "supports_pagination",
]


def parse_timestamp(value: str | int | float | None) -> datetime | None:
    """Parse a source timestamp into an aware datetime.

    Accepts ISO 8601 strings (with or without a trailing Z or offset; naive
    values are taken as UTC) and Unix epochs in milliseconds.

    Args:
        value: Raw timestamp value from a session file

    Returns:
        Timezone-aware datetime, or None if the value is missing or invalid
    """
    if value is None or value == "":
        return None

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)

    try:
        # Handle ISO 8601 with optional microseconds and Z suffix
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
    except (ValueError, AttributeError):
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def iter_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """Yield the JSON objects of a JSONL file, skipping malformed lines."""
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict):
                yield entry


def as_dict(value: Any) -> dict[str, Any]:
    """Return value when it is a JSON object, else an empty dict."""
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list[Any]:
    """Return value when it is a JSON array, else an empty list."""
    return value if isinstance(value, list) else []


def as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def take_window(messages: Iterable[Message], page: int, page_size: int) -> list[Message]:
    """Forward page window over a lazily produced message stream.

    Stops consuming the stream once the window is filled.
    """
    start = page * page_size
    stream = iter(messages)
    try:
        return list(islice(stream, start, start + page_size))
    finally:
        close = getattr(stream, "close", None)
        if close is not None:
            close()


def file_mtime(path: Path) -> datetime:
    """Modification time of a file, used when a format omits timestamps."""
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


def read_json(path: Path) -> Any:
    """Load a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def resolve_project_path(project_path: str) -> str:
    """Resolve a project filter to an absolute path ("" stays unscoped)."""
    if not project_path:
        return ""
    return os.path.abspath(os.path.expanduser(project_path))


def sort_newest_first(sessions: list[Session], limit: int = 0) -> list[Session]:
    """Sort sessions newest first and apply a limit (0 = unbounded)."""
    ordered = sorted(sessions, key=lambda s: s.timestamp, reverse=True)
    if limit > 0:
        return ordered[:limit]
    return ordered


def sort_messages(messages: list[Message]) -> list[Message]:
    """Order messages by creation time, breaking ties by message id.

    A message without a timestamp is placed as if it carried the timestamp
    of the message before it in the file, so it stays right after its
    predecessor. Leading messages without one keep their file order.
    """
    keyed: list[tuple[tuple[float, int, str, int], Message]] = []
    last_seen = float("-inf")
    for index, message in enumerate(messages):
        if message.timestamp is None:
            key = (last_seen, 1, "", index)
        else:
            last_seen = message.timestamp.timestamp()
            key = (last_seen, 0, message.id, index)
        keyed.append((key, message))
    keyed.sort(key=lambda item: item[0])
    return [message for _, message in keyed]


def forward_window(messages: list[Message], page: int, page_size: int) -> list[Message]:
    """Forward-only page window over an ordered message list."""
    start = page * page_size
    if start >= len(messages):
        return []
    return messages[start : start + page_size]


class SessionSource(ABC):
    """Base class for session sources.

    Subclasses must set the `source_name` class attribute and implement
    `list_sessions()` and `get_session()`. Sources that can count messages
    and address pages from the end additionally provide
    `get_session_page()` (see PaginatedSource).
    """

    source_name: str
    # Human-readable name of the storage layout, used in logs and errors
    backend_name: str = "files"

    @abstractmethod
    def list_sessions(self, project_path: str = "", limit: int = 0) -> list[Session]:
        """List sessions, newest first.

        Args:
            project_path: Only return sessions for this project ("" = all)
            limit: Maximum number of sessions (0 = unbounded)

        Returns:
            Sessions ordered newest first
        """

    @abstractmethod
    def get_session(self, session_id: str, page: int = 0, page_size: int = 20) -> list[Message]:
        """Get one forward page of a session's messages.

        Raises:
            SessionNotFound: If the session does not exist in this source
        """

    def search_sessions(self, project_path: str, query: str, limit: int = 0) -> list[Session]:
        """Find sessions whose title or content contains the query.

        Case-insensitive substring scan over every session in scope. This is
        the index-free fallback; ranked search goes through SearchIndex.
        """
        needle = query.lower()
        matches: list[Session] = []

        for session in self.list_sessions(project_path, 0):
            if needle in session.summary.lower() or needle in session.first_message.lower():
                matches.append(session)
            else:
                try:
                    messages = self.get_session(session.id, 0, FULL_SESSION_PAGE_SIZE)
                except (SessionsError, OSError, *MALFORMED_RECORD_ERRORS):
                    logger.debug("Skipping unreadable session in scan: source=%s id=%s", self.source_name, session.id)
                    continue
                if any(needle in m.content.lower() for m in messages):
                    matches.append(session)

            if limit > 0 and len(matches) >= limit:
                break

        return matches


@runtime_checkable
class PaginatedSource(Protocol):
    """Optional capability: exact counts and reverse page addressing."""

    def get_session_page(
        self,
        session_id: str,
        page: int,
        page_size: int,
        from_end: bool = False,
    ) -> SessionPage: ...


def supports_pagination(source: object) -> bool:
    """Check whether a source offers get_session_page()."""
    return isinstance(source, PaginatedSource)


class SourceRegistry:
    """Registry of session sources by name."""

    def __init__(self) -> None:
        self._sources: dict[str, SessionSource] = {}

    def register(self, source: SessionSource) -> None:
        """Register a source."""
        self._sources[source.source_name] = source

    def require(self, source_name: str) -> SessionSource:
        """Get source by name, raising SourceNotFound if unknown."""
        source = self._sources.get(source_name)
        if source is None:
            raise SourceNotFound(source_name)
        return source

    def select(self, source_name: str = "") -> dict[str, SessionSource]:
        """Sources in scope for a filter ("" selects every source)."""
        if source_name:
            return {source_name: self.require(source_name)}
        return dict(self._sources)
