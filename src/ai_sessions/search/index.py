"""Lazily maintained BM25 full-text index over normalized sessions.

Each indexed session is one document keyed by session id. Besides the
searchable text and per-term frequencies, a document remembers the
fingerprint (mtime in nanoseconds and size) of the file it was built from,
so callers can ask whether a session must be re-read before searching.
"""

import json
import os
import sqlite3
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from ai_sessions.errors import IndexFailure
from ai_sessions.logging import get_logger
from ai_sessions.models import SearchResult, Session
from ai_sessions.search.text import (
    DEFAULT_B,
    DEFAULT_K1,
    DEFAULT_SNIPPET_LENGTH,
    bm25,
    make_snippet,
    normalize_scores,
    term_frequencies,
    tokenize,
)
from ai_sessions.sources.base import resolve_project_path

logger = get_logger("search.index")

Fingerprint = tuple[int, int]

# Default for index_session: stat the backing file at write time
_STAT_AT_WRITE = object()


def file_fingerprint(file_path: str) -> Fingerprint | None:
    """Return (mtime_ns, size) of a file, or None if it cannot be stat'ed."""
    if not file_path:
        return None
    try:
        st = os.stat(file_path)
    except OSError:
        return None
    return st.st_mtime_ns, st.st_size


@dataclass
class IndexEntry:
    """Stored state for one indexed session."""

    session: Session
    length: int
    file_mtime_ns: int | None
    file_size: int | None
    indexed_at: datetime
    missing_count: int = 0

    @property
    def fingerprint(self) -> Fingerprint | None:
        if self.file_mtime_ns is None or self.file_size is None:
            return None
        return self.file_mtime_ns, self.file_size


class SearchIndex:
    """SQLite-backed BM25 index of sessions.

    A connection is opened for each call and closed before it returns, so
    several processes may share one index file.
    """

    def __init__(
        self,
        path: Path,
        k1: float = DEFAULT_K1,
        b: float = DEFAULT_B,
        snippet_length: int = DEFAULT_SNIPPET_LENGTH,
        busy_timeout_ms: int = 5000,
        evict_after_missing: int = 3,
    ) -> None:
        """Initialize the index, creating the database if needed.

        Args:
            path: Path to SQLite database file. Parent directories
                  will be created if they don't exist.
            k1: BM25 term frequency saturation
            b: BM25 length normalization
            snippet_length: Maximum characters in a result snippet
            busy_timeout_ms: How long to wait on a locked database
            evict_after_missing: Consecutive freshness checks with a missing
                backing file before the entry is dropped (0 = never)
        """
        self.path = path
        self.k1 = k1
        self.b = b
        self.snippet_length = snippet_length
        self.busy_timeout_ms = busy_timeout_ms
        self.evict_after_missing = evict_after_missing

        path.parent.mkdir(parents=True, exist_ok=True)
        self.ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.path, timeout=self.busy_timeout_ms / 1000)
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        except sqlite3.Error as exc:
            raise IndexFailure(f"failed to open search index {self.path}: {exc}") from exc

        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise IndexFailure(f"search index query failed: {exc}") from exc
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        """Create the documents and postings tables if they don't exist."""
        with self._connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS documents (
                    session_id TEXT PRIMARY KEY,
                    source TEXT NOT NULL,
                    project_path TEXT NOT NULL DEFAULT '',
                    session_ts REAL NOT NULL,
                    session_json TEXT NOT NULL,
                    content TEXT NOT NULL,
                    length INTEGER NOT NULL,
                    file_mtime_ns INTEGER,
                    file_size INTEGER,
                    indexed_at TEXT NOT NULL,
                    missing_count INTEGER NOT NULL DEFAULT 0
                );
                CREATE INDEX IF NOT EXISTS idx_documents_scope ON documents(source, project_path);
                CREATE TABLE IF NOT EXISTS postings (
                    session_id TEXT NOT NULL,
                    term TEXT NOT NULL,
                    tf INTEGER NOT NULL,
                    PRIMARY KEY (session_id, term)
                );
                CREATE INDEX IF NOT EXISTS idx_postings_term ON postings(term);
            """)

    def needs_reindex(self, session_id: str, file_path: str) -> bool:
        """Check whether a session's stored document is missing or stale.

        A backing file that can no longer be read counts as changed. Each
        such check bumps the entry's missing counter; once the counter
        reaches evict_after_missing the entry is removed from the index.

        Args:
            session_id: Session identifier
            file_path: File the session is read from

        Returns:
            True if the session should be (re)indexed
        """
        current = file_fingerprint(file_path)

        with self._connect() as conn:
            row = conn.execute(
                "SELECT file_mtime_ns, file_size, missing_count FROM documents WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if row is None:
                return True

            if current is None:
                missing = row["missing_count"] + 1
                if self.evict_after_missing > 0 and missing >= self.evict_after_missing:
                    self._delete(conn, session_id)
                    logger.info("Evicted session with missing file: id=%s path=%s", session_id, file_path)
                else:
                    conn.execute(
                        "UPDATE documents SET missing_count = ? WHERE session_id = ?",
                        (missing, session_id),
                    )
                conn.commit()
                return True

            if row["missing_count"]:
                # The file is back, so earlier misses no longer count as consecutive
                conn.execute("UPDATE documents SET missing_count = 0 WHERE session_id = ?", (session_id,))
                conn.commit()

            return (row["file_mtime_ns"], row["file_size"]) != current

    def index_session(
        self,
        session: Session,
        full_text: str,
        fingerprint: Fingerprint | None | object = _STAT_AT_WRITE,
    ) -> None:
        """Store or replace a session's document.

        Runs in a single transaction, so a reader sees either the previous
        document or the new one. Indexing the same session twice with the
        same text leaves the index unchanged apart from indexed_at.

        Args:
            session: Session metadata (also stored for result rendering)
            full_text: Searchable text of the session
            fingerprint: Fingerprint of the file as it was before full_text
                was read from it. Defaults to stat'ing the file now.

        Raises:
            IndexFailure: If the index could not be written
        """
        tokens = tokenize(full_text)
        frequencies = term_frequencies(tokens)
        if fingerprint is _STAT_AT_WRITE:
            fingerprint = file_fingerprint(session.file_path)
        mtime_ns, size = fingerprint if fingerprint is not None else (None, None)

        with self._connect() as conn:
            with conn:
                self._delete(conn, session.id)
                conn.execute(
                    """
                    INSERT INTO documents (
                        session_id, source, project_path, session_ts, session_json, content,
                        length, file_mtime_ns, file_size, indexed_at, missing_count
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        session.id,
                        session.source,
                        session.project_path,
                        session.timestamp.timestamp(),
                        json.dumps(session.to_dict()),
                        full_text,
                        len(tokens),
                        mtime_ns,
                        size,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.executemany(
                    "INSERT INTO postings (session_id, term, tf) VALUES (?, ?, ?)",
                    [(session.id, term, tf) for term, tf in frequencies.items()],
                )

        logger.debug("Indexed session: id=%s source=%s terms=%d", session.id, session.source, len(frequencies))

    def search(
        self,
        query: str,
        source: str = "",
        project_path: str = "",
        limit: int = 20,
    ) -> list[SearchResult]:
        """Rank indexed sessions against a query with BM25.

        Document frequencies and the average document length are taken over
        the whole index; source and project filters only narrow the
        candidates.

        Args:
            query: Free-text query
            source: Only return sessions from this source ("" = all)
            project_path: Only return sessions for this project ("" = all)
            limit: Maximum number of results (0 = unbounded)

        Returns:
            Results ordered by descending score, newest session first on
            ties. The top result scores 1.0.
        """
        terms = list(dict.fromkeys(tokenize(query)))
        if not terms:
            return []

        project = resolve_project_path(project_path)
        placeholders = ",".join("?" for _ in terms)

        with self._connect() as conn:
            stats = conn.execute("SELECT COUNT(*) AS n, AVG(length) AS avg_len FROM documents").fetchone()
            num_docs = stats["n"]
            if num_docs == 0:
                return []
            avg_len = float(stats["avg_len"] or 0.0)

            doc_freq = {
                row["term"]: row["df"]
                for row in conn.execute(
                    f"SELECT term, COUNT(*) AS df FROM postings WHERE term IN ({placeholders}) GROUP BY term",
                    terms,
                )
            }

            sql = (
                "SELECT p.session_id, p.term, p.tf, d.length, d.session_ts "
                "FROM postings p JOIN documents d ON d.session_id = p.session_id "
                f"WHERE p.term IN ({placeholders})"
            )
            args: list[object] = list(terms)
            if source:
                sql += " AND d.source = ?"
                args.append(source)
            if project:
                sql += " AND d.project_path = ?"
                args.append(project)

            raw_scores: dict[str, float] = defaultdict(float)
            timestamps: dict[str, float] = {}
            for row in conn.execute(sql, args):
                raw_scores[row["session_id"]] += bm25(
                    tf=row["tf"],
                    doc_len=row["length"],
                    avg_len=avg_len,
                    df=doc_freq.get(row["term"], 1),
                    num_docs=num_docs,
                    k1=self.k1,
                    b=self.b,
                )
                timestamps[row["session_id"]] = row["session_ts"]

            scores = normalize_scores(dict(raw_scores))
            ranked = sorted(scores, key=lambda sid: (-scores[sid], -timestamps[sid], sid))
            if limit > 0:
                ranked = ranked[:limit]

            results: list[SearchResult] = []
            for session_id in ranked:
                row = conn.execute(
                    "SELECT session_json, content FROM documents WHERE session_id = ?",
                    (session_id,),
                ).fetchone()
                results.append(
                    SearchResult(
                        session=Session.from_dict(json.loads(row["session_json"])),
                        score=scores[session_id],
                        snippet=make_snippet(row["content"], terms, self.snippet_length),
                    )
                )

        return results

    def get_entry(self, session_id: str) -> IndexEntry | None:
        """Get the stored state for a session.

        Args:
            session_id: Session identifier

        Returns:
            IndexEntry if indexed, None otherwise
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT session_json, length, file_mtime_ns, file_size, indexed_at, missing_count
                FROM documents
                WHERE session_id = ?
                """,
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return IndexEntry(
            session=Session.from_dict(json.loads(row["session_json"])),
            length=row["length"],
            file_mtime_ns=row["file_mtime_ns"],
            file_size=row["file_size"],
            indexed_at=datetime.fromisoformat(row["indexed_at"]),
            missing_count=row["missing_count"],
        )

    def sessions(self, source: str = "", project_path: str = "") -> list[Session]:
        """Sessions stored in the index, optionally filtered by source and project."""
        sql = "SELECT session_json FROM documents WHERE 1 = 1"
        args: list[object] = []
        if source:
            sql += " AND source = ?"
            args.append(source)
        project = resolve_project_path(project_path)
        if project:
            sql += " AND project_path = ?"
            args.append(project)

        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY session_id", args).fetchall()
        return [Session.from_dict(json.loads(row["session_json"])) for row in rows]

    def count(self) -> int:
        """Number of indexed sessions."""
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

    def remove(self, session_id: str) -> bool:
        """Remove a session from the index.

        Returns:
            True if the session was indexed
        """
        with self._connect() as conn:
            with conn:
                removed = self._delete(conn, session_id)
        return removed

    def _delete(self, conn: sqlite3.Connection, session_id: str) -> bool:
        conn.execute("DELETE FROM postings WHERE session_id = ?", (session_id,))
        cursor = conn.execute("DELETE FROM documents WHERE session_id = ?", (session_id,))
        return cursor.rowcount > 0
