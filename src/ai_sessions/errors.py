"""Exception hierarchy for session sources and the search index."""


class SessionsError(Exception):
    """Base class for all ai-sessions errors."""


class NotFound(SessionsError):
    """A requested source or session does not exist."""


class SourceNotFound(NotFound):
    """Unknown source key."""

    def __init__(self, source: str) -> None:
        super().__init__(f"unknown source: {source}")
        self.source = source


class SessionNotFound(NotFound):
    """Session id absent in the queried source."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class BackendUnavailable(SessionsError):
    """A backing store is missing, unopenable or failed to answer a query.

    When raised by the dual-backend resolver, `causes` maps each backend
    name to the error it produced.
    """

    def __init__(self, message: str, causes: dict[str, BaseException] | None = None) -> None:
        super().__init__(message)
        self.causes = causes or {}


class ParseFailure(SessionsError):
    """A single record could not be parsed."""


class IndexFailure(SessionsError):
    """The search index could not be read or written."""


class PaginationUnsupported(SessionsError):
    """The source cannot serve the requested pagination mode."""
