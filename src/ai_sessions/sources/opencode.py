"""Sources for OpenCode (SST) sessions.

OpenCode keeps its data under ~/.local/share/opencode/. Current releases
store everything in an SQLite database:
    opencode.db
        project(id, worktree, ...)
        session(id, project_id, title, time_created, ...)
        message(id, session_id, time_created, data)  - data: JSON with role, modelID, ...
        part(id, message_id, session_id, time_created, data)  - data: JSON content part

Older releases used a hierarchical tree of JSON files:
    storage/project/<projectID>.json           - Project metadata (worktree)
    storage/session/<projectID>/ses_<id>.json  - Session metadata
    storage/message/<sessionID>/msg_<id>.json  - Message metadata (may inline content)
    storage/part/<messageID>/prt_<id>.json     - Content parts

Part data contains various types:
- TextPart: {type: "text", text: string}
- ReasoningPart: {type: "reasoning", text: string}
- ToolPart: {type: "tool", tool: string, callID: string, state: {input, output, status}}
- FilePart: {type: "file", url: string, mime: string, filename: string}
- StepFinish, Patch, Snapshot, Compaction, ...

The "opencode" source is a DualBackendSource that reads the database first
and falls back to the file tree.
"""

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ai_sessions.config import Config
from ai_sessions.errors import BackendUnavailable, SessionNotFound
from ai_sessions.logging import get_logger
from ai_sessions.models import (
    Message,
    Part,
    Session,
    SessionPage,
    TextPart,
    ToolCallPart,
    UnknownPart,
    extract_first_line,
)
from ai_sessions.pagination import has_more, paginate, resolve_page
from ai_sessions.sources.base import (
    SessionSource,
    as_dict,
    as_str,
    file_mtime,
    forward_window,
    parse_timestamp,
    read_json,
    resolve_project_path,
    sort_messages,
    sort_newest_first,
)
from ai_sessions.sources.dual import DualBackendSource

logger = get_logger("sources.opencode")

SOURCE_NAME = "opencode"


def classify_part(data: Any) -> Part:
    """Classify one OpenCode content part."""
    if isinstance(data, str):
        return TextPart(text=data)
    if not isinstance(data, dict):
        return UnknownPart(kind="unknown", raw={"value": data})

    part_type = as_str(data.get("type"))

    if part_type == "text" or (not part_type and isinstance(data.get("text"), str)):
        return TextPart(text=as_str(data.get("text")))

    if part_type == "tool":
        state = as_dict(data.get("state"))
        return ToolCallPart(
            name=as_str(data.get("tool")) or "unknown",
            arguments=state.get("input"),
            call_id=as_str(data.get("callID")),
            kind="tool",
            raw=data,
        )

    return UnknownPart(kind=part_type or "unknown", raw=data)


def classify_inline_content(content: Any) -> list[Part]:
    """Classify the inline `content` field used by old message files.

    Content is either a string, a list of part objects, or a single part
    object.
    """
    if content is None:
        return []
    if isinstance(content, list):
        return [classify_part(item) for item in content]
    return [classify_part(content)]


def message_metadata(data: dict[str, Any]) -> dict[str, Any]:
    """Pull model/mode/cost/token metadata out of message data."""
    metadata: dict[str, Any] = {}
    if data.get("modelID"):
        metadata["model"] = data["modelID"]
    if data.get("mode"):
        metadata["mode"] = data["mode"]
    cost = data.get("cost")
    if isinstance(cost, (int, float)) and cost > 0:
        metadata["cost"] = cost
    if data.get("tokens") is not None:
        metadata["tokens"] = data["tokens"]
    return metadata


def created_at(data: dict[str, Any]) -> int:
    """Extract time.created (milliseconds) from message data, 0 if absent."""
    time_data = data.get("time")
    if not isinstance(time_data, dict):
        return 0
    created = time_data.get("created")
    if isinstance(created, bool) or not isinstance(created, (int, float)):
        return 0
    return int(created)


class OpencodeSqliteSource(SessionSource):
    """OpenCode sessions from opencode.db.

    Counts messages with SQL, so exact totals and reverse pages are cheap.
    """

    source_name = SOURCE_NAME
    backend_name = "sqlite"

    def __init__(self, db_path: Path, busy_timeout_ms: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open the database for the duration of one call."""
        if not self._db_path.exists():
            raise BackendUnavailable(f"opencode database not found: {self._db_path}")

        try:
            conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout_ms / 1000)
            conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        except sqlite3.Error as exc:
            raise BackendUnavailable(f"failed to open opencode database: {exc}") from exc

        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise BackendUnavailable(f"opencode database query failed: {exc}") from exc
        finally:
            conn.close()

    def list_sessions(self, project_path: str = "", limit: int = 0) -> list[Session]:
        with self._connect() as conn:
            return self._list_sessions(conn, resolve_project_path(project_path), limit)

    def _list_sessions(self, conn: sqlite3.Connection, project_path: str, limit: int) -> list[Session]:
        query = """
            SELECT s.id, s.title, s.time_created, p.worktree
            FROM session s
            JOIN project p ON p.id = s.project_id
        """
        args: list[Any] = []

        if project_path:
            query += " WHERE p.worktree = ?"
            args.append(project_path)

        query += " ORDER BY s.time_created DESC, s.id"

        if limit > 0:
            query += " LIMIT ?"
            args.append(limit)

        sessions: list[Session] = []
        for row in conn.execute(query, args):
            timestamp = parse_timestamp(row["time_created"])
            if timestamp is None:
                # Every session shares the database file, so its mtime is the fallback
                timestamp = file_mtime(self._db_path)

            try:
                first_message, user_count = self._first_user_message_and_count(conn, row["id"])
            except sqlite3.Error:
                logger.debug("Could not read user messages: id=%s", row["id"])
                first_message, user_count = "", 0

            sessions.append(
                Session(
                    id=row["id"],
                    source=self.source_name,
                    timestamp=timestamp,
                    project_path=row["worktree"] or "",
                    first_message=first_message,
                    summary=row["title"] or "",
                    file_path=str(self._db_path),
                    user_message_count=user_count,
                )
            )

        return sessions

    def _first_user_message_and_count(self, conn: sqlite3.Connection, session_id: str) -> tuple[str, int]:
        first_row = conn.execute(
            """
            SELECT json_extract(p.data, '$.text') AS text
            FROM message m
            JOIN part p ON p.message_id = m.id
            WHERE m.session_id = ?
              AND json_extract(m.data, '$.role') = 'user'
              AND json_extract(p.data, '$.type') = 'text'
              AND trim(COALESCE(json_extract(p.data, '$.text'), '')) <> ''
            ORDER BY m.time_created ASC, m.id ASC, p.time_created ASC, p.id ASC
            LIMIT 1
            """,
            (session_id,),
        ).fetchone()

        count_row = conn.execute(
            """
            SELECT COUNT(DISTINCT m.id)
            FROM message m
            JOIN part p ON p.message_id = m.id
            WHERE m.session_id = ?
              AND json_extract(m.data, '$.role') = 'user'
              AND json_extract(p.data, '$.type') = 'text'
              AND trim(COALESCE(json_extract(p.data, '$.text'), '')) <> ''
            """,
            (session_id,),
        ).fetchone()

        first_message = extract_first_line(first_row["text"]) if first_row and first_row["text"] else ""
        return first_message, count_row[0] if count_row else 0

    def get_session(self, session_id: str, page: int = 0, page_size: int = 20) -> list[Message]:
        return self.get_session_page(session_id, page, page_size).messages

    def get_session_page(
        self,
        session_id: str,
        page: int,
        page_size: int,
        from_end: bool = False,
    ) -> SessionPage:
        with self._connect() as conn:
            total = conn.execute(
                "SELECT COUNT(*) FROM message WHERE session_id = ?",
                (session_id,),
            ).fetchone()[0]

            if total == 0 and not self._session_exists(conn, session_id):
                raise SessionNotFound(session_id)

            window = resolve_page(total, page, page_size, reverse=from_end)
            messages: list[Message] = []
            rows: list[sqlite3.Row] = []
            if not window.out_of_range:
                rows = conn.execute(
                    """
                    SELECT id, time_created, data
                    FROM message
                    WHERE session_id = ?
                    ORDER BY time_created ASC, id ASC
                    LIMIT ? OFFSET ?
                    """,
                    (session_id, page_size, window.offset),
                ).fetchall()
                for row in rows:
                    message = self._build_message(conn, row)
                    if message is not None:
                        messages.append(message)

        return SessionPage(
            messages=messages,
            total=total,
            resolved_page=window.resolved_page,
            has_more=has_more(window, len(rows), total),
            page_size=page_size,
        )

    def _session_exists(self, conn: sqlite3.Connection, session_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM session WHERE id = ? LIMIT 1", (session_id,)).fetchone()
        return row is not None

    def _build_message(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Message | None:
        """Build a message from a message row and its parts.

        Returns None (and logs) when the message JSON is malformed.
        """
        try:
            data = json.loads(row["data"])
        except (json.JSONDecodeError, TypeError):
            logger.debug("Skipping malformed message: id=%s", row["id"])
            return None
        if not isinstance(data, dict):
            return None

        parts: list[Part] = []
        for part_row in conn.execute(
            """
            SELECT id, data
            FROM part
            WHERE message_id = ?
            ORDER BY time_created ASC, id ASC
            """,
            (row["id"],),
        ):
            try:
                parts.append(classify_part(json.loads(part_row["data"])))
            except (json.JSONDecodeError, TypeError):
                logger.debug("Skipping malformed part: id=%s", part_row["id"])

        timestamp = parse_timestamp(created_at(data) or row["time_created"])

        return Message.from_parts(
            role=as_str(data.get("role")),
            parts=parts,
            timestamp=timestamp,
            metadata=message_metadata(data),
            message_id=row["id"],
        )


class OpencodeFileSource(SessionSource):
    """OpenCode sessions from the legacy storage/ file tree."""

    source_name = SOURCE_NAME
    backend_name = "files"

    def __init__(self, storage_dir: Path) -> None:
        self._storage_dir = storage_dir

    def list_sessions(self, project_path: str = "", limit: int = 0) -> list[Session]:
        if not self._storage_dir.exists():
            return []

        session_root = self._storage_dir / "session"
        if not session_root.exists():
            return []

        target = resolve_project_path(project_path)
        sessions: list[Session] = []

        for project_dir in sorted(session_root.iterdir()):
            if not project_dir.is_dir():
                continue

            worktree = self._load_worktree(project_dir.name)

            for session_file in sorted(project_dir.glob("ses_*.json")):
                session = self._parse_session_file(session_file, worktree)
                if session is None:
                    continue
                if target and session.project_path != target:
                    continue
                sessions.append(session)

        return sort_newest_first(sessions, limit)

    def _load_worktree(self, project_id: str) -> str:
        """Worktree path from project/<projectID>.json, "" if unavailable."""
        project_file = self._storage_dir / "project" / f"{project_id}.json"
        try:
            data = read_json(project_file)
        except (json.JSONDecodeError, OSError):
            return ""
        if not isinstance(data, dict):
            return ""
        return as_str(data.get("worktree"))

    def _parse_session_file(self, path: Path, worktree: str) -> Session | None:
        try:
            data = read_json(path)
        except (json.JSONDecodeError, OSError):
            logger.debug("Skipping unreadable session file: path=%s", path)
            return None
        if not isinstance(data, dict):
            return None

        session_id = as_str(data.get("id")) or path.stem
        timestamp = parse_timestamp(created_at(data)) or file_mtime(path)

        try:
            messages = self._read_messages(session_id)
        except OSError:
            messages = []
        user_texts = [m.content for m in messages if m.role == "user" and m.content.strip()]

        return Session(
            id=session_id,
            source=self.source_name,
            timestamp=timestamp,
            project_path=worktree or as_str(data.get("directory")),
            first_message=extract_first_line(user_texts[0]) if user_texts else "",
            summary=as_str(data.get("title")),
            file_path=str(path),
            user_message_count=len(user_texts),
        )

    def _read_messages(self, session_id: str) -> list[Message]:
        """Read every message of a session, ordered by creation time."""
        message_dir = self._storage_dir / "message" / session_id
        messages: list[Message] = []

        for msg_file in sorted(message_dir.glob("msg_*.json")):
            try:
                data = read_json(msg_file)
            except (json.JSONDecodeError, OSError):
                logger.debug("Skipping unreadable message file: path=%s", msg_file)
                continue
            if not isinstance(data, dict):
                continue

            message_id = as_str(data.get("id")) or msg_file.stem

            if data.get("content") is not None:
                parts = classify_inline_content(data["content"])
            else:
                parts = self._load_parts(message_id)

            messages.append(
                Message.from_parts(
                    role=as_str(data.get("role")),
                    parts=parts,
                    timestamp=parse_timestamp(created_at(data)),
                    metadata=message_metadata(data),
                    message_id=message_id,
                )
            )

        return sort_messages(messages)

    def _load_parts(self, message_id: str) -> list[Part]:
        parts_dir = self._storage_dir / "part" / message_id
        parts: list[Part] = []
        for part_file in sorted(parts_dir.glob("prt_*.json")):
            try:
                parts.append(classify_part(read_json(part_file)))
            except (json.JSONDecodeError, OSError):
                logger.debug("Skipping unreadable part file: path=%s", part_file)
        return parts

    def _session_file_exists(self, session_id: str) -> bool:
        return any((self._storage_dir / "session").glob(f"*/{session_id}.json"))

    def _load_session_messages(self, session_id: str) -> list[Message]:
        message_dir = self._storage_dir / "message" / session_id
        if not message_dir.is_dir():
            if self._session_file_exists(session_id):
                return []
            raise SessionNotFound(session_id)
        return self._read_messages(session_id)

    def get_session(self, session_id: str, page: int = 0, page_size: int = 20) -> list[Message]:
        return forward_window(self._load_session_messages(session_id), page, page_size)

    def get_session_page(
        self,
        session_id: str,
        page: int,
        page_size: int,
        from_end: bool = False,
    ) -> SessionPage:
        return paginate(self._load_session_messages(session_id), page, page_size, from_end)


def opencode_source(config: Config) -> DualBackendSource:
    """Build the opencode source: database first, file tree as fallback."""
    root = config.source_root(SOURCE_NAME, ".local", "share", "opencode")
    return DualBackendSource(
        SOURCE_NAME,
        canonical=OpencodeSqliteSource(root / "opencode.db", config.search.busy_timeout_ms),
        legacy=OpencodeFileSource(root / "storage"),
    )
