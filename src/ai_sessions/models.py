"""Normalized data models shared by every session source."""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Self, Union

# Maximum length of a session preview before it gets an ellipsis
PREVIEW_LENGTH = 200

ROLES = ("user", "assistant", "tool", "system")


def extract_first_line(text: str, max_length: int = PREVIEW_LENGTH) -> str:
    """Return the first non-empty line of text, truncated for previews.

    Args:
        text: Message text
        max_length: Maximum characters kept before appending "..."

    Returns:
        Trimmed first line, or an empty string if the text has none
    """
    for line in text.split("\n"):
        trimmed = line.strip()
        if trimmed:
            if len(trimmed) > max_length:
                return trimmed[:max_length] + "..."
            return trimmed
    return ""


def format_timestamp(value: datetime | None) -> str | None:
    """Format a timestamp as ISO 8601, passing None through."""
    if value is None:
        return None
    return value.isoformat()


@dataclass(frozen=True)
class TextPart:
    """Plain text content."""

    text: str
    kind: str = "text"
    raw: dict[str, Any] | None = None


@dataclass(frozen=True)
class ToolCallPart:
    """A request from the assistant to run a tool."""

    name: str
    arguments: Any = None
    call_id: str = ""
    kind: str = "tool_call"
    raw: dict[str, Any] | None = None


@dataclass(frozen=True)
class ToolResultPart:
    """Output returned by a tool."""

    output: Any = None
    call_id: str = ""
    is_error: bool = False
    kind: str = "tool_result"
    raw: dict[str, Any] | None = None


@dataclass(frozen=True)
class UnknownPart:
    """Any other part kind (images, diffs, reasoning, snapshots, ...)."""

    kind: str
    raw: dict[str, Any] | None = None


Part = Union[TextPart, ToolCallPart, ToolResultPart, UnknownPart]


def part_payload(part: Part) -> dict[str, Any]:
    """Return the verbatim payload retained for a non-text part."""
    if part.raw is not None:
        return part.raw
    if isinstance(part, ToolCallPart):
        return {"type": part.kind, "id": part.call_id, "name": part.name, "arguments": part.arguments}
    if isinstance(part, ToolResultPart):
        return {"type": part.kind, "tool_call_id": part.call_id, "output": part.output, "is_error": part.is_error}
    return {"type": part.kind}


@dataclass
class Session:
    """Metadata for one coding session from any source."""

    id: str
    source: str
    timestamp: datetime
    project_path: str = ""  # Absolute path, or "" for unscoped sessions
    first_message: str = ""
    summary: str = ""
    file_path: str = ""  # Backing file used for freshness fingerprints
    user_message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dict."""
        return {
            "id": self.id,
            "source": self.source,
            "project_path": self.project_path,
            "first_message": self.first_message,
            "summary": self.summary,
            "timestamp": format_timestamp(self.timestamp),
            "file_path": self.file_path,
            "user_message_count": self.user_message_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Rebuild a session from the output of to_dict()."""
        return cls(
            id=data["id"],
            source=data["source"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            project_path=data.get("project_path", ""),
            first_message=data.get("first_message", ""),
            summary=data.get("summary", ""),
            file_path=data.get("file_path", ""),
            user_message_count=data.get("user_message_count", 0),
        )


@dataclass
class Message:
    """A normalized message inside a session."""

    role: str  # user, assistant, tool, system
    content: str = ""
    timestamp: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    part_types: dict[str, int] = field(default_factory=dict)
    non_text_parts: list[dict[str, Any]] = field(default_factory=list)
    id: str = ""

    @property
    def has_non_text_parts(self) -> bool:
        return bool(self.non_text_parts)

    @classmethod
    def from_parts(
        cls,
        role: str,
        parts: list[Part],
        timestamp: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        message_id: str = "",
    ) -> Self:
        """Build a message from classified content parts.

        Text parts are joined into content; every other part is kept
        verbatim in non_text_parts so nothing is lost.
        """
        texts: list[str] = []
        non_text: list[dict[str, Any]] = []
        kinds: Counter[str] = Counter()

        for part in parts:
            kinds[part.kind] += 1
            if isinstance(part, TextPart):
                if part.text:
                    texts.append(part.text)
            else:
                non_text.append(part_payload(part))

        return cls(
            role=role,
            content="\n".join(texts),
            timestamp=timestamp,
            metadata=metadata if metadata is not None else {},
            part_types=dict(kinds),
            non_text_parts=non_text,
            id=message_id,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dict."""
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": format_timestamp(self.timestamp),
            "metadata": self.metadata,
            "part_types": self.part_types,
            "non_text_parts": self.non_text_parts,
            "has_non_text_parts": self.has_non_text_parts,
        }


@dataclass
class SessionPage:
    """One window of messages plus pagination metadata."""

    messages: list[Message]
    total: int | None  # None when the source cannot count cheaply
    resolved_page: int
    has_more: bool
    page_size: int = 0

    @property
    def total_pages(self) -> int | None:
        if self.total is None or self.page_size <= 0:
            return None
        return (self.total + self.page_size - 1) // self.page_size

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dict."""
        data: dict[str, Any] = {
            "resolved_page": self.resolved_page,
            "page_size": self.page_size,
            "has_more": self.has_more,
            "messages": [m.to_dict() for m in self.messages],
            "count": len(self.messages),
        }
        if self.total is not None:
            data["total_messages"] = self.total
            data["total_pages"] = self.total_pages
        return data


@dataclass
class SearchResult:
    """A ranked search hit."""

    session: Session
    score: float
    snippet: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "score": self.score,
            "snippet": self.snippet,
        }
