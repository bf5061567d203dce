"""
Corridor — cross-workspace knowledge sharing

Two data paths over one storage root (``~/.palace`` by default):

    personal promotion   workspace Learning -> PersonalLearning
                         (manual, or automatic above a confidence/use bar)
    linking and fetch    registry of linked workspaces plus cached reads
                         of their shareable artifacts (see fetch.py)

Storage:
    <base>/corridors/personal.db     personal_learnings, linked_workspaces
    <base>/corridors/cache/<name>/   per-link artifact cache

The corridor is an explicit handle: open_corridor() returns a Corridor that
the caller closes (or uses as a context manager).  Nothing is process-global.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from palacectl import lifecycle
from palacectl.classify import extract_tags
from palacectl.config import CorridorConfig, LifecycleConfig
from palacectl.errors import (
    NotFoundError,
    NotLinkedError,
    PalaceError,
    ValidationError,
)
from palacectl.fetch import CorridorFetcher, FetchResult
from palacectl.oracle import DEFAULT_MARKER, MarkerCheck, has_workspace_marker
from palacectl.store import _like_pattern
from palacectl.types import (
    Learning,
    LinkedWorkspace,
    PersonalLearning,
    _now_iso,
    validate_confidence,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MIN_PER_LINK_LIMIT = 5

_LINK_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS personal_learnings (
    id               TEXT PRIMARY KEY,
    origin_workspace TEXT NOT NULL DEFAULT '',
    content          TEXT NOT NULL,
    confidence       REAL NOT NULL DEFAULT 0.5
                     CHECK(confidence >= 0.0 AND confidence <= 1.0),
    source           TEXT NOT NULL DEFAULT 'promoted',
    created_at       TEXT NOT NULL,
    last_used        TEXT,
    use_count        INTEGER NOT NULL DEFAULT 0 CHECK(use_count >= 0),
    tags             TEXT NOT NULL DEFAULT '[]'      -- JSON array
);

CREATE TABLE IF NOT EXISTS linked_workspaces (
    name          TEXT PRIMARY KEY,
    path          TEXT NOT NULL,
    added_at      TEXT NOT NULL,
    last_accessed TEXT
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_personal_origin ON personal_learnings(origin_workspace);
CREATE INDEX IF NOT EXISTS idx_personal_confidence ON personal_learnings(confidence);
"""


# ---------------------------------------------------------------------------
# CorridorStore
# ---------------------------------------------------------------------------

class CorridorStore:
    """SQLite store for personal learnings and the linked-workspace registry."""

    def __init__(self, db_path: str = ":memory:", wal_mode: bool = True):
        self._db_path = db_path
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.commit()
        logger.info(f"CorridorStore initialized: {db_path}")

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Personal learnings ------------------------------------------------

    def upsert_learning(self, learning: PersonalLearning) -> PersonalLearning:
        """Insert or replace a personal learning."""
        with self._lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO personal_learnings
                   (id, origin_workspace, content, confidence, source,
                    created_at, last_used, use_count, tags)
                   VALUES (?,?,?,?,?,?,?,?,?)""",
                (
                    learning.id, learning.origin_workspace, learning.content,
                    learning.confidence, learning.source, learning.created_at,
                    learning.last_used, learning.use_count,
                    json.dumps(learning.tags),
                ),
            )
            self._conn.commit()
        return learning

    def get_learning(self, learning_id: str) -> Optional[PersonalLearning]:
        """Read one personal learning."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM personal_learnings WHERE id=?", (learning_id,)
            ).fetchone()
            return self._row_to_learning(row) if row else None

    def list_learnings(
        self,
        query: Optional[str] = None,
        origin: Optional[str] = None,
        limit: int = 50,
    ) -> List[PersonalLearning]:
        """Personal learnings, best confidence first, optionally filtered."""
        with self._lock:
            conditions = []
            params: list = []
            if query:
                conditions.append("content LIKE ? ESCAPE '\\'")
                params.append(_like_pattern(query))
            if origin:
                conditions.append("origin_workspace=?")
                params.append(origin)
            where = " AND ".join(conditions) if conditions else "1=1"
            rows = self._conn.execute(
                f"SELECT * FROM personal_learnings WHERE {where} "
                f"ORDER BY confidence DESC, use_count DESC LIMIT ?",
                params + [limit],
            ).fetchall()
            return [self._row_to_learning(r) for r in rows]

    def learning_activity(self) -> List[Tuple[str, float, str]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, confidence, COALESCE(last_used, created_at) AS active_at "
                "FROM personal_learnings"
            ).fetchall()
            return [(r["id"], r["confidence"], r["active_at"]) for r in rows]

    def learning_confidence(self, learning_id: str) -> Optional[float]:
        with self._lock:
            row = self._conn.execute(
                "SELECT confidence FROM personal_learnings WHERE id=?", (learning_id,)
            ).fetchone()
            return row["confidence"] if row else None

    def touch_learning(self, learning_id: str, when: Optional[str] = None) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "UPDATE personal_learnings SET use_count=use_count+1, last_used=? "
                "WHERE id=?",
                (when or _now_iso(), learning_id),
            )
            self._conn.commit()
            return cur.rowcount > 0

    def set_learning_confidence(self, learning_id: str, confidence: float) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "UPDATE personal_learnings SET confidence=? WHERE id=?",
                (confidence, learning_id),
            )
            self._conn.commit()
            return cur.rowcount > 0

    def learnings_below(self, floor: float) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM personal_learnings WHERE confidence < ? ORDER BY id",
                (floor,),
            ).fetchall()
            return [r["id"] for r in rows]

    def delete_learning(self, learning_id: str) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM personal_learnings WHERE id=?", (learning_id,)
            )
            self._conn.commit()
            return cur.rowcount > 0

    # -- Linked workspaces -------------------------------------------------

    def upsert_link(self, link: LinkedWorkspace) -> LinkedWorkspace:
        """Register a link, or update the path of an existing one."""
        with self._lock:
            self._conn.execute(
                """INSERT INTO linked_workspaces (name, path, added_at, last_accessed)
                   VALUES (?,?,?,?)
                   ON CONFLICT(name) DO UPDATE SET path=excluded.path""",
                (link.name, link.path, link.added_at, link.last_accessed),
            )
            self._conn.commit()
        return self.get_link(link.name)

    def get_link(self, name: str) -> Optional[LinkedWorkspace]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM linked_workspaces WHERE name=?", (name,)
            ).fetchone()
            return self._row_to_link(row) if row else None

    def list_links(self) -> List[LinkedWorkspace]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM linked_workspaces ORDER BY name"
            ).fetchall()
            return [self._row_to_link(r) for r in rows]

    def delete_link(self, name: str) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM linked_workspaces WHERE name=?", (name,)
            )
            self._conn.commit()
            return cur.rowcount > 0

    def touch_link(self, name: str, when: Optional[str] = None) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE linked_workspaces SET last_accessed=? WHERE name=?",
                (when or _now_iso(), name),
            )
            self._conn.commit()

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Counts and average confidence."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS cnt, AVG(confidence) AS avg FROM personal_learnings"
            ).fetchone()
            links = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM linked_workspaces"
            ).fetchone()["cnt"]
            by_origin = {}
            for r in self._conn.execute(
                "SELECT origin_workspace, COUNT(*) AS cnt FROM personal_learnings "
                "GROUP BY origin_workspace"
            ).fetchall():
                by_origin[r["origin_workspace"]] = r["cnt"]
            return {
                "learning_count": row["cnt"],
                "avg_confidence": round(row["avg"], 4) if row["avg"] is not None else None,
                "linked_workspaces": links,
                "by_origin": by_origin,
            }

    # -- Helpers -----------------------------------------------------------

    @staticmethod
    def _row_to_learning(row: sqlite3.Row) -> PersonalLearning:
        return PersonalLearning(
            id=row["id"],
            origin_workspace=row["origin_workspace"],
            content=row["content"],
            confidence=row["confidence"],
            source=row["source"],
            created_at=row["created_at"],
            last_used=row["last_used"],
            use_count=row["use_count"],
            tags=json.loads(row["tags"]),
        )

    @staticmethod
    def _row_to_link(row: sqlite3.Row) -> LinkedWorkspace:
        return LinkedWorkspace(
            name=row["name"],
            path=row["path"],
            added_at=row["added_at"],
            last_accessed=row["last_accessed"],
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class LinkedLearningsReport:
    """Per-link results of get_all_linked_learnings(); failures land in errors."""

    results: List[FetchResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def warnings(self) -> List[str]:
        return [r.warning for r in self.results if r.warning]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "errors": list(self.errors),
        }


@dataclass
class SearchHit:
    """One match of a corridor search."""

    origin: str  # "personal" or linked workspace name
    learning_id: str
    content: str
    confidence: float
    from_cache: bool = False


@dataclass
class CorridorSearchResult:
    hits: List[SearchHit] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Corridor handle
# ---------------------------------------------------------------------------

class Corridor:
    """Open corridor: personal store, link registry, fetcher."""

    def __init__(
        self,
        base_path: str,
        config: Optional[CorridorConfig] = None,
        lifecycle_config: Optional[LifecycleConfig] = None,
        client: Optional[httpx.Client] = None,
        marker: str = DEFAULT_MARKER,
        marker_check: Optional[MarkerCheck] = None,
    ):
        self.base_path = base_path
        self.config = config or CorridorConfig()
        self._lifecycle = lifecycle_config or LifecycleConfig()
        self._marker = marker
        self._marker_check = marker_check
        corridors = os.path.join(base_path, "corridors")
        self.store = CorridorStore(os.path.join(corridors, "personal.db"))
        self.fetcher = CorridorFetcher(
            os.path.join(corridors, "cache"), self.config,
            client=client, marker=marker,
        )

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> Corridor:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- Personal promotion ------------------------------------------------

    def promote_from_workspace(
        self, name: str, learning: Learning,
    ) -> PersonalLearning:
        """
        Copy a workspace learning into the personal store.

        The id is kept.  Promoting an id again refreshes content and
        confidence and counts as one use.
        """
        existing = self.store.get_learning(learning.id)
        confidence = validate_confidence(learning.confidence)
        if existing is not None:
            existing.content = learning.content
            existing.confidence = confidence
            existing.origin_workspace = name
            existing.use_count += 1
            existing.last_used = _now_iso()
            personal = existing
        else:
            tags = list(learning.tags)
            for tag in extract_tags(learning.content):
                if tag not in tags:
                    tags.append(tag)
            personal = PersonalLearning(
                id=learning.id,
                origin_workspace=name,
                content=learning.content,
                confidence=confidence,
                source="promoted",
                tags=tags,
            )
        self.store.upsert_learning(personal)
        logger.info(f"promoted {learning.id} from {name}")
        return personal

    def auto_promote(self, name: str, workspace) -> List[PersonalLearning]:
        """
        Promote approved learnings meeting the confidence and use-count bar.

        ``workspace`` is anything with list_learnings(min_confidence,
        min_use_count): a MemoryStore or a Workspace.  Learnings already in
        the personal store are skipped.
        """
        promoted: List[PersonalLearning] = []
        candidates = workspace.list_learnings(
            min_confidence=self.config.auto_promote_min_confidence,
            min_use_count=self.config.auto_promote_min_uses,
        )
        for learning in candidates:
            if learning.authority != "approved":
                continue
            if self.store.get_learning(learning.id) is not None:
                continue
            promoted.append(self.promote_from_workspace(name, learning))
        return promoted

    def list_personal(
        self, query: Optional[str] = None, limit: int = 50,
    ) -> List[PersonalLearning]:
        return self.store.list_learnings(query=query, limit=limit)

    def get_personal(self, learning_id: str) -> PersonalLearning:
        learning = self.store.get_learning(learning_id)
        if learning is None:
            raise NotFoundError("personal learning", learning_id)
        return learning

    def reinforce(self, learning_id: str) -> PersonalLearning:
        """Count one use of a personal learning."""
        if not self.store.touch_learning(learning_id):
            raise NotFoundError("personal learning", learning_id)
        return self.get_personal(learning_id)

    def delete_learning(self, learning_id: str) -> None:
        if not self.store.delete_learning(learning_id):
            raise NotFoundError("personal learning", learning_id)

    def decay(
        self, older_than_days: Optional[int] = None, delta: Optional[float] = None,
    ) -> int:
        return lifecycle.decay(
            self.store,
            self._lifecycle.decay_days if older_than_days is None else older_than_days,
            self._lifecycle.decay_delta if delta is None else delta,
        )

    def prune(self, confidence_floor: Optional[float] = None) -> int:
        return lifecycle.prune(
            self.store,
            self._lifecycle.confidence_floor if confidence_floor is None
            else confidence_floor,
        )

    def maintain(self) -> lifecycle.MaintenanceReport:
        """Decay then prune personal learnings with configured defaults."""
        return lifecycle.run_maintenance(self.store, self._lifecycle)

    # -- Linking -----------------------------------------------------------

    def _is_workspace(self, path: str) -> bool:
        return has_workspace_marker(path, self._marker, self._marker_check)

    def link(self, name: str, path: str) -> LinkedWorkspace:
        """
        Register a linked workspace.

        Local paths must contain the workspace marker; http(s) URLs are
        registered as given.  Linking an existing name updates its path.
        """
        if not _LINK_NAME.match(name or ""):
            raise ValidationError(f"invalid link name: {name!r}")
        if not path:
            raise ValidationError("link path must not be empty")
        candidate = LinkedWorkspace(name=name, path=path)
        if not candidate.is_remote:
            path = os.path.abspath(os.path.expanduser(path))
            if not self._is_workspace(path):
                raise ValidationError(
                    f"{path} is not a workspace (missing {self._marker})"
                )
            candidate.path = path
        linked = self.store.upsert_link(candidate)
        logger.info(f"linked workspace {name} -> {linked.path}")
        return linked

    def unlink(self, name: str) -> None:
        """Remove a linked workspace and its cache (NotLinkedError if absent)."""
        if not self.store.delete_link(name):
            raise NotLinkedError(name)
        try:
            self.fetcher.clear_cache(name)
        except OSError as exc:
            logger.warning(f"could not clear corridor cache for {name}: {exc}")
        logger.info(f"unlinked workspace {name}")

    def list_links(self) -> List[LinkedWorkspace]:
        return self.store.list_links()

    def get_link(self, name: str) -> LinkedWorkspace:
        link = self.store.get_link(name)
        if link is None:
            raise NotFoundError("linked workspace", name)
        return link

    def validate_links(self) -> List[str]:
        """Names of local links whose workspace marker is gone (remote links never are)."""
        stale = []
        for link in self.store.list_links():
            if link.is_remote:
                continue
            try:
                if not self._is_workspace(link.path):
                    stale.append(link.name)
            except OSError as exc:
                logger.warning(f"link check skipped {link.name}: {exc}")
        return stale

    def prune_stale_links(self) -> List[str]:
        """Unlink every stale link and return the removed names."""
        removed = []
        for name in self.validate_links():
            try:
                self.unlink(name)
                removed.append(name)
            except PalaceError as exc:
                logger.warning(f"link prune skipped {name}: {exc}")
        return removed

    # -- Fetch -------------------------------------------------------------

    def get_linked_learnings(
        self,
        name: str,
        limit: int = 50,
        force_refresh: bool = False,
        query: Optional[str] = None,
    ) -> FetchResult:
        """
        Learnings of one linked workspace (cache first, stale cache on failure).

        A query keeps only learnings whose content contains it (case-insensitive);
        the filter is applied before the limit.

        Raises:
            NotFoundError: name is not linked.
            CorridorUnavailableError: fetch failed and nothing is cached.
        """
        link = self.get_link(name)
        try:
            result = self.fetcher.fetch(name, link.path, force_refresh=force_refresh)
        finally:
            self.store.touch_link(name)
        learnings = result.learnings
        if query:
            needle = query.lower()
            learnings = [lrn for lrn in learnings if needle in lrn.content.lower()]
        result.learnings = sorted(
            learnings, key=lambda lrn: lrn.confidence, reverse=True,
        )[:limit]
        return result

    def get_all_linked_learnings(
        self,
        limit: int = 50,
        force_refresh: bool = False,
        query: Optional[str] = None,
    ) -> LinkedLearningsReport:
        """Fetch every link; one failing link is reported and the rest continue."""
        report = LinkedLearningsReport()
        links = self.store.list_links()
        if not links:
            return report
        per_link = max(MIN_PER_LINK_LIMIT, limit // len(links))
        for link in links:
            try:
                report.results.append(self.get_linked_learnings(
                    link.name, limit=per_link, force_refresh=force_refresh,
                    query=query,
                ))
            except PalaceError as exc:
                report.errors.append(f"{link.name}: {exc}")
        return report

    def search(
        self, query: str, limit: int = 20, include_linked: bool = True,
    ) -> CorridorSearchResult:
        """Substring search over personal and linked learnings, best confidence first."""
        result = CorridorSearchResult()
        for lrn in self.store.list_learnings(query=query, limit=limit):
            result.hits.append(SearchHit(
                origin="personal", learning_id=lrn.id, content=lrn.content,
                confidence=lrn.confidence,
            ))
        if include_linked:
            report = self.get_all_linked_learnings(limit=max(limit, 50), query=query)
            for fetched in report.results:
                for lrn in fetched.learnings:
                    result.hits.append(SearchHit(
                        origin=fetched.name, learning_id=lrn.id,
                        content=lrn.content, confidence=lrn.confidence,
                        from_cache=fetched.from_cache,
                    ))
            result.warnings.extend(report.warnings)
            result.errors.extend(report.errors)
        result.hits.sort(key=lambda h: h.confidence, reverse=True)
        result.hits = result.hits[:limit]
        return result

    def stats(self) -> Dict[str, Any]:
        return self.store.stats()


def open_corridor(
    base_path: Optional[str] = None,
    config: Optional[CorridorConfig] = None,
    lifecycle_config: Optional[LifecycleConfig] = None,
    client: Optional[httpx.Client] = None,
    marker: str = DEFAULT_MARKER,
    marker_check: Optional[MarkerCheck] = None,
) -> Corridor:
    """
    Open the corridor rooted at base_path.

    base_path defaults to config.base_path, then ``~/.palace``.
    """
    config = config or CorridorConfig()
    base = os.path.expanduser(base_path) if base_path else config.resolved_base_path()
    return Corridor(base, config=config, lifecycle_config=lifecycle_config,
                    client=client, marker=marker, marker_check=marker_check)
