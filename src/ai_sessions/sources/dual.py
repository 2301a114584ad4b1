"""Dual-backend resolution for sources that migrated their storage format.

A DualBackendSource puts a canonical store (e.g. an SQLite database) and a
legacy store (e.g. a flat file tree) behind one source. Every operation is
tried against the canonical backend first and, if that attempt fails for
any reason, against the legacy backend. Results from the two backends are
never merged. Nothing is remembered between calls: the canonical store is
tried again on the next call, since it may have appeared in the meantime.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from ai_sessions.errors import BackendUnavailable, SessionNotFound
from ai_sessions.logging import get_logger
from ai_sessions.models import Message, Session, SessionPage
from ai_sessions.sources.base import SessionSource, supports_pagination

logger = get_logger("sources.dual")

T = TypeVar("T")


@dataclass(frozen=True)
class Attempt(Generic[T]):
    """Outcome of running one operation against one backend."""

    backend: str
    value: T | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def attempt(backend: SessionSource, operation: Callable[[SessionSource], T]) -> Attempt[T]:
    """Run an operation against a backend, capturing any failure as data."""
    try:
        return Attempt(backend=backend.backend_name, value=operation(backend))
    except Exception as exc:
        return Attempt(backend=backend.backend_name, error=exc)


def combined_failure(source_name: str, operation: str, attempts: list[Attempt]) -> Exception:
    """Build the single error reported when every backend failed.

    If every backend reported the session as missing, the caller gets a
    SessionNotFound; otherwise one BackendUnavailable naming each cause.
    """
    errors = [a.error for a in attempts if a.error is not None]
    if errors and all(isinstance(e, SessionNotFound) for e in errors):
        return errors[0]

    details = " and ".join(f"{a.backend} ({a.error})" for a in attempts)
    return BackendUnavailable(
        f"failed to {operation} {source_name} sessions via {details}",
        causes={a.backend: a.error for a in attempts if a.error is not None},
    )


class DualBackendSource(SessionSource):
    """Source that prefers a canonical backend and falls back to a legacy one."""

    backend_name = "dual"

    def __init__(self, source_name: str, canonical: SessionSource, legacy: SessionSource) -> None:
        self.source_name = source_name
        self.canonical = canonical
        self.legacy = legacy

    @property
    def backends(self) -> tuple[SessionSource, SessionSource]:
        return self.canonical, self.legacy

    def resolve(self, operation: str, call: Callable[[SessionSource], T]) -> T:
        """Run `call` against the canonical backend, then the legacy one.

        Args:
            operation: Short verb used in log lines and the combined error
            call: Operation to run against a single backend

        Returns:
            The first successful backend's result

        Raises:
            SessionNotFound: If every backend reported the session as missing
            BackendUnavailable: If every backend failed otherwise
        """
        attempts: list[Attempt[T]] = []
        for backend in self.backends:
            outcome = attempt(backend, call)
            if outcome.succeeded:
                if attempts:
                    logger.debug(
                        "Fell back to %s backend: source=%s operation=%s",
                        outcome.backend,
                        self.source_name,
                        operation,
                    )
                return outcome.value  # type: ignore[return-value]
            logger.debug(
                "Backend failed: source=%s backend=%s operation=%s error=%s",
                self.source_name,
                outcome.backend,
                operation,
                outcome.error,
            )
            attempts.append(outcome)

        raise combined_failure(self.source_name, operation, attempts)

    def list_sessions(self, project_path: str = "", limit: int = 0) -> list[Session]:
        return self.resolve("list", lambda b: b.list_sessions(project_path, limit))

    def get_session(self, session_id: str, page: int = 0, page_size: int = 20) -> list[Message]:
        return self.resolve("get", lambda b: b.get_session(session_id, page, page_size))

    def get_session_page(
        self,
        session_id: str,
        page: int,
        page_size: int,
        from_end: bool = False,
    ) -> SessionPage:
        def call(backend: SessionSource) -> SessionPage:
            if not supports_pagination(backend):
                raise BackendUnavailable(f"{backend.backend_name} backend cannot paginate")
            return backend.get_session_page(session_id, page, page_size, from_end)  # type: ignore[attr-defined]

        return self.resolve("page", call)

    def search_sessions(self, project_path: str, query: str, limit: int = 0) -> list[Session]:
        return self.resolve("search", lambda b: b.search_sessions(project_path, query, limit))
