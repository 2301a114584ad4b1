"""Orchestration of session sources and the search index.

SessionService is the single entry point used by the CLI: it selects the
sources in scope, merges their listings, picks the right pagination path
for each source and keeps the search index fresh before answering a
search.
"""

from typing import Any

from ai_sessions.errors import PaginationUnsupported, SessionsError
from ai_sessions.logging import get_logger
from ai_sessions.models import SearchResult, Session, SessionPage
from ai_sessions.search import SearchIndex, file_fingerprint
from ai_sessions.sources.base import (
    FULL_SESSION_PAGE_SIZE,
    SessionSource,
    SourceRegistry,
    sort_newest_first,
    supports_pagination,
)

logger = get_logger("service")

DEFAULT_LIST_LIMIT = 10
DEFAULT_SEARCH_LIMIT = 10
DEFAULT_PAGE_SIZE = 20


def session_text(session: Session, contents: list[str]) -> str:
    """Build the searchable text of a session.

    Args:
        session: Session metadata
        contents: Message contents in session order

    Returns:
        First message, summary and message contents joined by spaces
    """
    parts = [session.first_message, session.summary, *contents]
    return " ".join(p for p in parts if p)


class SessionService:
    """List, read and search sessions across every registered source."""

    def __init__(self, registry: SourceRegistry, index: SearchIndex | None = None) -> None:
        self.registry = registry
        self.index = index

    def available_sources(self) -> list[dict[str, Any]]:
        """Describe each registered source."""
        sources = []
        for name, source in self.registry.select().items():
            sources.append({
                "source": name,
                "backend": source.backend_name,
                "paginated": supports_pagination(source),
            })
        return sources

    def list_sessions(self, source: str = "", project_path: str = "", limit: int = DEFAULT_LIST_LIMIT) -> list[Session]:
        """List sessions from every source in scope, newest first.

        A source that fails to list is logged and skipped.

        Args:
            source: Only list this source ("" = all)
            project_path: Only list sessions for this project ("" = all)
            limit: Maximum number of sessions (0 = unbounded)

        Raises:
            SourceNotFound: If source names an unknown source
        """
        sessions: list[Session] = []
        for name, adapter in self.registry.select(source).items():
            try:
                sessions.extend(adapter.list_sessions(project_path, limit))
            except (SessionsError, OSError) as e:
                logger.warning("Error listing sessions: source=%s error=%s", name, e)
            except Exception:
                logger.exception("Unexpected error listing sessions: source=%s", name)
        return sort_newest_first(sessions, limit)

    def get_session_page(
        self,
        source: str,
        session_id: str,
        page: int = 0,
        page_size: int = DEFAULT_PAGE_SIZE,
        from_end: bool = False,
    ) -> SessionPage:
        """Get one page of a session's messages.

        Sources with the pagination capability report exact totals and can
        count pages from the end. Other sources are read forward only, and
        has_more is found by reading the single message after the page.

        Args:
            source: Source name
            session_id: Session identifier
            page: Page index (from the start, or from the end with from_end)
            page_size: Messages per page
            from_end: Count pages from the newest message

        Raises:
            ValueError: If page or page_size is out of range
            SourceNotFound: If source is unknown
            SessionNotFound: If the session does not exist
            PaginationUnsupported: If from_end is requested from a source
                that cannot count its messages
        """
        if page < 0:
            raise ValueError(f"page must be >= 0, got {page}")
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")

        adapter = self.registry.require(source)

        if supports_pagination(adapter):
            return adapter.get_session_page(session_id, page, page_size, from_end)  # type: ignore[attr-defined]

        if from_end:
            raise PaginationUnsupported(f"source {source} cannot page from the end")

        messages = adapter.get_session(session_id, page, page_size)
        has_more = False
        if len(messages) == page_size:
            # Read the single message following this page, if any
            has_more = bool(adapter.get_session(session_id, (page + 1) * page_size, 1))

        return SessionPage(
            messages=messages,
            total=None,
            resolved_page=page,
            has_more=has_more,
            page_size=page_size,
        )

    def refresh_index(self, source: str = "", project_path: str = "") -> dict[str, int]:
        """Reindex every session in scope whose backing file changed.

        Failures on individual sessions are logged and counted; they never
        stop the sweep.

        Args:
            source: Only sweep this source ("" = all)
            project_path: Only sweep sessions for this project ("" = all)

        Returns:
            Counts of sessions checked, indexed and failed
        """
        index = self._require_index()
        stats = {"checked": 0, "indexed": 0, "failed": 0}

        for name, adapter in self.registry.select(source).items():
            try:
                sessions = adapter.list_sessions(project_path, 0)
            except (SessionsError, OSError) as e:
                logger.warning("Error listing sessions for indexing: source=%s error=%s", name, e)
                continue
            except Exception:
                logger.exception("Unexpected error listing sessions for indexing: source=%s", name)
                continue

            for session in sessions:
                stats["checked"] += 1
                try:
                    if not index.needs_reindex(session.id, session.file_path):
                        continue
                    self._index_one(index, adapter, session)
                except (SessionsError, OSError) as e:
                    stats["failed"] += 1
                    logger.warning("Error indexing session: source=%s id=%s error=%s", name, session.id, e)
                    continue
                except Exception:
                    stats["failed"] += 1
                    logger.exception("Unexpected error indexing session: source=%s id=%s", name, session.id)
                    continue
                stats["indexed"] += 1

            self._check_vanished(index, name, project_path, {s.id for s in sessions})

        logger.info(
            "Index refreshed: checked=%d indexed=%d failed=%d",
            stats["checked"],
            stats["indexed"],
            stats["failed"],
        )
        return stats

    def _check_vanished(self, index: SearchIndex, source: str, project_path: str, listed: set[str]) -> None:
        """Run the freshness check on indexed sessions the source no longer lists.

        Their backing files are usually gone, so each sweep counts towards
        evicting them from the index.
        """
        try:
            stored_sessions = index.sessions(source, project_path)
        except SessionsError as e:
            logger.warning("Error reading indexed sessions: source=%s error=%s", source, e)
            return

        for stored in stored_sessions:
            if stored.id in listed:
                continue
            try:
                index.needs_reindex(stored.id, stored.file_path)
            except SessionsError as e:
                logger.warning("Error checking vanished session: source=%s id=%s error=%s", source, stored.id, e)

    def _index_one(self, index: SearchIndex, adapter: SessionSource, session: Session) -> None:
        # Taken before the read: a file appended to during the read must stay stale
        fingerprint = file_fingerprint(session.file_path)
        messages = adapter.get_session(session.id, 0, FULL_SESSION_PAGE_SIZE)
        text = session_text(session, [m.content for m in messages if m.content])
        index.index_session(session, text, fingerprint=fingerprint)

    def search(
        self,
        query: str,
        source: str = "",
        project_path: str = "",
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[SearchResult]:
        """Rank sessions against a query, refreshing stale entries first.

        Args:
            query: Free-text query
            source: Only search this source ("" = all)
            project_path: Only search sessions for this project ("" = all)
            limit: Maximum number of results (0 = unbounded)

        Raises:
            ValueError: If the query is empty
            SourceNotFound: If source names an unknown source
        """
        if not query.strip():
            raise ValueError("query is required")

        index = self._require_index()
        self.refresh_index(source, project_path)
        return index.search(query, source, project_path, limit)

    def scan(
        self,
        query: str,
        source: str = "",
        project_path: str = "",
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[Session]:
        """Substring search without the index, newest sessions first.

        Raises:
            ValueError: If the query is empty
            SourceNotFound: If source names an unknown source
        """
        if not query.strip():
            raise ValueError("query is required")

        matches: list[Session] = []
        for name, adapter in self.registry.select(source).items():
            try:
                matches.extend(adapter.search_sessions(project_path, query, limit))
            except (SessionsError, OSError) as e:
                logger.warning("Error scanning sessions: source=%s error=%s", name, e)
            except Exception:
                logger.exception("Unexpected error scanning sessions: source=%s", name)
        return sort_newest_first(matches, limit)

    def _require_index(self) -> SearchIndex:
        if self.index is None:
            raise SessionsError("search index is not configured")
        return self.index
