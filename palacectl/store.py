"""
Workspace Store — SQLite Persistent Backend

Tables:
    ideas        - Ideas (always direct writes)
    decisions    - Decisions (single outcome per row)
    learnings    - Learnings (confidence CHECK-constrained to [0, 1])
    proposals    - Governance queue (dedupe_key unique among pending rows)
    links        - Typed edges between records and code locations
    record_tags  - Tags per record
    audit_log    - Append-only audit trail (filled through StoreAuditSink)
    schema_meta  - Schema metadata

Thread safety: uses sqlite3 check_same_thread=False with explicit
serialization.  Single writer per store; WAL lets readers run alongside.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from palacectl.errors import DuplicateProposalError, ValidationError
from palacectl.types import (
    AuditLogEntry,
    KnowledgeRecord,
    Learning,
    Link,
    Proposal,
    _now_iso,
    kind_from_id,
    record_class,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ideas (
    id          TEXT PRIMARY KEY,
    content     TEXT NOT NULL,
    context     TEXT NOT NULL DEFAULT '',
    scope       TEXT NOT NULL CHECK(scope IN ('palace','room','file')),
    scope_path  TEXT NOT NULL DEFAULT '',
    source      TEXT NOT NULL DEFAULT 'agent',
    status      TEXT NOT NULL DEFAULT 'active'
                CHECK(status IN ('active','exploring','implemented','dropped')),
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS decisions (
    id            TEXT PRIMARY KEY,
    content       TEXT NOT NULL,
    rationale     TEXT NOT NULL DEFAULT '',
    context       TEXT NOT NULL DEFAULT '',
    scope         TEXT NOT NULL CHECK(scope IN ('palace','room','file')),
    scope_path    TEXT NOT NULL DEFAULT '',
    source        TEXT NOT NULL DEFAULT 'agent',
    status        TEXT NOT NULL DEFAULT 'active'
                  CHECK(status IN ('active','proposed','superseded','reversed')),
    outcome       TEXT NOT NULL DEFAULT 'unknown'
                  CHECK(outcome IN ('unknown','successful','failed','mixed')),
    outcome_note  TEXT NOT NULL DEFAULT '',
    outcome_at    TEXT,
    authority     TEXT NOT NULL DEFAULT 'unreviewed',
    promoted_from TEXT,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS learnings (
    id            TEXT PRIMARY KEY,
    content       TEXT NOT NULL,
    scope         TEXT NOT NULL CHECK(scope IN ('palace','room','file')),
    scope_path    TEXT NOT NULL DEFAULT '',
    source        TEXT NOT NULL DEFAULT 'agent',
    confidence    REAL NOT NULL DEFAULT 0.5
                  CHECK(confidence >= 0.0 AND confidence <= 1.0),
    use_count     INTEGER NOT NULL DEFAULT 0 CHECK(use_count >= 0),
    last_used     TEXT,
    authority     TEXT NOT NULL DEFAULT 'unreviewed',
    promoted_from TEXT,
    created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS proposals (
    id                        TEXT PRIMARY KEY,
    proposed_as               TEXT NOT NULL CHECK(proposed_as IN ('decision','learning')),
    content                   TEXT NOT NULL,
    context                   TEXT NOT NULL DEFAULT '',
    rationale                 TEXT NOT NULL DEFAULT '',
    scope                     TEXT NOT NULL CHECK(scope IN ('palace','room','file')),
    scope_path                TEXT NOT NULL DEFAULT '',
    source                    TEXT NOT NULL DEFAULT 'agent',
    classification_confidence REAL NOT NULL DEFAULT 0.0,
    classification_signals    TEXT NOT NULL DEFAULT '[]',   -- JSON array
    dedupe_key                TEXT NOT NULL,
    status                    TEXT NOT NULL DEFAULT 'pending'
                              CHECK(status IN ('pending','approved','rejected','expired')),
    promoted_to_id            TEXT,
    reviewed_by               TEXT,
    reviewed_at               TEXT,
    review_note               TEXT NOT NULL DEFAULT '',
    created_at                TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS links (
    id           TEXT PRIMARY KEY,
    source_id    TEXT NOT NULL,
    source_kind  TEXT NOT NULL,
    target_id    TEXT NOT NULL,
    target_kind  TEXT NOT NULL
                 CHECK(target_kind IN ('idea','decision','learning','code')),
    relation     TEXT NOT NULL,
    target_mtime REAL,              -- code targets only
    created_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS record_tags (
    record_id   TEXT NOT NULL,
    record_kind TEXT NOT NULL,
    tag         TEXT NOT NULL,
    PRIMARY KEY (record_id, tag)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id           TEXT PRIMARY KEY,
    action       TEXT NOT NULL,
    actor_type   TEXT NOT NULL,
    actor_id     TEXT NOT NULL DEFAULT '',
    target_id    TEXT NOT NULL DEFAULT '',
    target_kind  TEXT NOT NULL DEFAULT '',
    details_json TEXT NOT NULL DEFAULT '{}',
    timestamp    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- At most one live pending proposal per dedupe key
CREATE UNIQUE INDEX IF NOT EXISTS idx_proposals_pending_dedupe
    ON proposals(dedupe_key) WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status);
CREATE INDEX IF NOT EXISTS idx_links_source ON links(source_id);
CREATE INDEX IF NOT EXISTS idx_links_target ON links(target_id);
CREATE INDEX IF NOT EXISTS idx_tags_tag ON record_tags(tag);
CREATE INDEX IF NOT EXISTS idx_learnings_confidence ON learnings(confidence);
CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_log(target_id);
"""

_TABLES: Dict[str, str] = {
    "idea": "ideas",
    "decision": "decisions",
    "learning": "learnings",
}

_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "idea": (
        "id", "content", "context", "scope", "scope_path", "source",
        "status", "created_at", "updated_at",
    ),
    "decision": (
        "id", "content", "rationale", "context", "scope", "scope_path",
        "source", "status", "outcome", "outcome_note", "outcome_at",
        "authority", "promoted_from", "created_at", "updated_at",
    ),
    "learning": (
        "id", "content", "scope", "scope_path", "source", "confidence",
        "use_count", "last_used", "authority", "promoted_from", "created_at",
    ),
}

# Text columns searched by substring per kind
_SEARCH_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "idea": ("content", "context"),
    "decision": ("content", "rationale", "context"),
    "learning": ("content",),
}


def _like_pattern(query: str) -> str:
    """Escape LIKE wildcards so the query matches literally."""
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _table(kind: str) -> str:
    try:
        return _TABLES[kind]
    except KeyError:
        raise ValidationError(f"invalid record kind: {kind!r}") from None


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    """
    SQLite-backed persistent store for one workspace.

    Thread-safe via explicit lock.  Audit entries are written by the
    governance layer through an audit sink, not by the store itself.
    """

    def __init__(
        self, db_path: str = ":memory:", wal_mode: bool = True, read_only: bool = False,
    ):
        """Open (and create if needed) a workspace store.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            read_only: Open an existing store without writing to it (no DDL,
                no pragmas, no metadata rows).  Raises sqlite3.OperationalError
                when the file does not exist.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        if read_only:
            uri = Path(db_path).resolve().as_uri() + "?mode=ro"
            self._conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            logger.debug(f"MemoryStore opened read-only: {db_path}")
            return
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
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'palacectl')",
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', ?)",
            (_now_iso(),),
        )
        self._conn.commit()
        logger.info(f"MemoryStore initialized: {db_path}")

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Records -----------------------------------------------------------

    def write_record(self, record: KnowledgeRecord) -> KnowledgeRecord:
        """Insert or replace a record (and its tags)."""
        with self._lock:
            try:
                self._insert_record(record)
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise ValidationError(
                    f"invalid {record.kind} {record.id}: {exc}"
                ) from exc
        return record

    def read_record(
        self, record_id: str, kind: Optional[str] = None,
    ) -> Optional[KnowledgeRecord]:
        """Read a record by id. Kind defaults to the one encoded in the id prefix."""
        kind = kind or kind_from_id(record_id)
        if kind is None:
            return None
        with self._lock:
            row = self._conn.execute(
                f"SELECT * FROM {_table(kind)} WHERE id=?", (record_id,)
            ).fetchone()
            if row is None:
                return None
            return self._row_to_record(kind, row)

    def record_exists(self, record_id: str, kind: str) -> bool:
        """Return True if a record of that kind exists."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT 1 FROM {_table(kind)} WHERE id=?", (record_id,)
            ).fetchone()
            return row is not None

    def list_records(
        self,
        kind: str,
        scope: Optional[str] = None,
        scope_path: Optional[str] = None,
        status: Optional[str] = None,
        tag: Optional[str] = None,
        limit: int = 100,
    ) -> List[KnowledgeRecord]:
        """List records of one kind with optional filters (newest first)."""
        with self._lock:
            conditions = []
            params: list = []
            if scope:
                conditions.append("scope=?")
                params.append(scope)
            if scope_path is not None:
                conditions.append("scope_path=?")
                params.append(scope_path)
            if status and kind != "learning":
                conditions.append("status=?")
                params.append(status)
            if tag:
                conditions.append(
                    "id IN (SELECT record_id FROM record_tags WHERE tag=?)"
                )
                params.append(tag.lower())
            where = " AND ".join(conditions) if conditions else "1=1"
            order = "confidence DESC, created_at DESC" if kind == "learning" \
                else "created_at DESC"
            rows = self._conn.execute(
                f"SELECT * FROM {_table(kind)} WHERE {where} ORDER BY {order} LIMIT ?",
                params + [limit],
            ).fetchall()
            return [self._row_to_record(kind, row) for row in rows]

    def search_records(
        self,
        query: str,
        kind: Optional[str] = None,
        limit: int = 50,
    ) -> List[KnowledgeRecord]:
        """Case-insensitive substring search over record text."""
        kinds = [kind] if kind else list(_TABLES)
        results: List[KnowledgeRecord] = []
        like = _like_pattern(query)
        with self._lock:
            for k in kinds:
                cols = _SEARCH_COLUMNS[k]
                clause = " OR ".join(f"{c} LIKE ? ESCAPE '\\'" for c in cols)
                rows = self._conn.execute(
                    f"SELECT * FROM {_table(k)} WHERE {clause} "
                    f"ORDER BY created_at DESC LIMIT ?",
                    [like] * len(cols) + [limit],
                ).fetchall()
                results.extend(self._row_to_record(k, row) for row in rows)
        results.sort(key=lambda r: r.created_at, reverse=True)
        return results[:limit]

    def update_status(self, kind: str, record_id: str, status: str) -> bool:
        """Set the status of an idea or decision."""
        if kind not in ("idea", "decision"):
            raise ValidationError(f"{kind} records have no status")
        with self._lock:
            try:
                cur = self._conn.execute(
                    f"UPDATE {_table(kind)} SET status=?, updated_at=? WHERE id=?",
                    (status, _now_iso(), record_id),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise ValidationError(f"invalid {kind} status: {status!r}") from exc
            return cur.rowcount > 0

    def set_decision_outcome(
        self, decision_id: str, outcome: str, note: str = "",
    ) -> bool:
        """Overwrite the single outcome held by a decision."""
        now = _now_iso()
        with self._lock:
            try:
                cur = self._conn.execute(
                    """UPDATE decisions
                       SET outcome=?, outcome_note=?, outcome_at=?, updated_at=?
                       WHERE id=?""",
                    (outcome, note, now, now, decision_id),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise ValidationError(f"invalid outcome: {outcome!r}") from exc
            return cur.rowcount > 0

    # -- Tags --------------------------------------------------------------

    def add_tags(self, record_id: str, kind: str, tags: List[str]) -> None:
        """Attach tags to a record (existing tags kept)."""
        with self._lock:
            self._write_tags(record_id, kind, tags)
            self._conn.commit()

    def read_tags(self, record_id: str) -> List[str]:
        """Return the tags of a record, sorted."""
        with self._lock:
            return self._read_tags(record_id)

    # -- Learnings (lifecycle primitives) ----------------------------------

    def get_learning(self, learning_id: str) -> Optional[Learning]:
        """Read one learning."""
        record = self.read_record(learning_id, "learning")
        return record  # type: ignore[return-value]

    def list_learnings(
        self,
        min_confidence: float = 0.0,
        min_use_count: int = 0,
        limit: Optional[int] = None,
    ) -> List[Learning]:
        """Learnings above thresholds, best confidence first."""
        sql = ("SELECT * FROM learnings WHERE confidence >= ? AND use_count >= ? "
               "ORDER BY confidence DESC, created_at DESC")
        params: list = [min_confidence, min_use_count]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
            return [self._row_to_record("learning", row) for row in rows]

    def learning_activity(self) -> List[Tuple[str, float, str]]:
        """(id, confidence, last activity) per learning; activity = last_used or created_at."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, confidence, COALESCE(last_used, created_at) AS active_at "
                "FROM learnings"
            ).fetchall()
            return [(r["id"], r["confidence"], r["active_at"]) for r in rows]

    def learning_confidence(self, learning_id: str) -> Optional[float]:
        """Current confidence of one learning, or None if absent."""
        with self._lock:
            row = self._conn.execute(
                "SELECT confidence FROM learnings WHERE id=?", (learning_id,)
            ).fetchone()
            return row["confidence"] if row else None

    def touch_learning(self, learning_id: str, when: Optional[str] = None) -> bool:
        """use_count += 1 and last_used = when (now by default)."""
        with self._lock:
            cur = self._conn.execute(
                "UPDATE learnings SET use_count=use_count+1, last_used=? WHERE id=?",
                (when or _now_iso(), learning_id),
            )
            self._conn.commit()
            return cur.rowcount > 0

    def set_learning_confidence(self, learning_id: str, confidence: float) -> bool:
        """Overwrite confidence (CHECK constraint keeps it in [0, 1])."""
        with self._lock:
            try:
                cur = self._conn.execute(
                    "UPDATE learnings SET confidence=? WHERE id=?",
                    (confidence, learning_id),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise ValidationError(
                    f"confidence {confidence} not in [0, 1] for {learning_id}"
                ) from exc
            return cur.rowcount > 0

    def learnings_below(self, floor: float) -> List[str]:
        """Ids of learnings with confidence strictly below floor."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM learnings WHERE confidence < ? ORDER BY id",
                (floor,),
            ).fetchall()
            return [r["id"] for r in rows]

    def delete_learning(self, learning_id: str) -> bool:
        """Hard-delete a learning together with its links and tags."""
        with self._lock:
            try:
                cur = self._conn.execute(
                    "DELETE FROM learnings WHERE id=?", (learning_id,)
                )
                deleted = cur.rowcount > 0
                if deleted:
                    self._conn.execute(
                        "DELETE FROM links WHERE source_id=? OR target_id=?",
                        (learning_id, learning_id),
                    )
                    self._conn.execute(
                        "DELETE FROM record_tags WHERE record_id=?", (learning_id,)
                    )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return deleted

    def export_learnings(
        self, min_confidence: float = 0.0, limit: Optional[int] = None,
    ) -> List[Learning]:
        """Learnings to publish in the shareable artifact."""
        return self.list_learnings(min_confidence=min_confidence, limit=limit)

    # -- Proposals ---------------------------------------------------------

    def insert_proposal(self, proposal: Proposal) -> Proposal:
        """
        Persist a pending proposal.

        Raises:
            DuplicateProposalError: A pending proposal shares the dedupe key.
        """
        with self._lock:
            existing = self._pending_id_for(proposal.dedupe_key)
            if existing is not None:
                raise DuplicateProposalError(existing, proposal.dedupe_key)
            try:
                self._conn.execute(
                    """INSERT INTO proposals
                       (id, proposed_as, content, context, rationale, scope,
                        scope_path, source, classification_confidence,
                        classification_signals, dedupe_key, status,
                        promoted_to_id, reviewed_by, reviewed_at, review_note,
                        created_at)
                       VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                    (
                        proposal.id, proposal.proposed_as, proposal.content,
                        proposal.context, proposal.rationale, proposal.scope,
                        proposal.scope_path, proposal.source,
                        proposal.classification_confidence,
                        json.dumps(list(proposal.classification_signals)),
                        proposal.dedupe_key, proposal.status,
                        proposal.promoted_to_id, proposal.reviewed_by,
                        proposal.reviewed_at, proposal.review_note,
                        proposal.created_at,
                    ),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                existing = self._pending_id_for(proposal.dedupe_key)
                if existing is not None:
                    raise DuplicateProposalError(existing, proposal.dedupe_key) from exc
                raise ValidationError(f"invalid proposal {proposal.id}: {exc}") from exc
        return proposal

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        """Read a proposal by id."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM proposals WHERE id=?", (proposal_id,)
            ).fetchone()
            return self._row_to_proposal(row) if row else None

    def find_pending(self, dedupe_key: str) -> Optional[Proposal]:
        """Return the pending proposal holding a dedupe key, if any."""
        with self._lock:
            pid = self._pending_id_for(dedupe_key)
        return self.get_proposal(pid) if pid else None

    def list_proposals(
        self,
        status: Optional[str] = "pending",
        proposed_as: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> List[Proposal]:
        """List proposals (pending only by default; status=None for all, limit=None for no limit)."""
        with self._lock:
            conditions = []
            params: list = []
            if status:
                conditions.append("status=?")
                params.append(status)
            if proposed_as:
                conditions.append("proposed_as=?")
                params.append(proposed_as)
            where = " AND ".join(conditions) if conditions else "1=1"
            rows = self._conn.execute(
                f"SELECT * FROM proposals WHERE {where} ORDER BY created_at ASC LIMIT ?",
                params + [-1 if limit is None else limit],
            ).fetchall()
            return [self._row_to_proposal(row) for row in rows]

    def materialize_proposal(
        self,
        proposal_id: str,
        record: KnowledgeRecord,
        reviewer: str,
        note: str = "",
    ) -> bool:
        """
        Approve a pending proposal and write its canonical record atomically.

        Returns False (nothing written) if the proposal is no longer pending.
        """
        with self._lock:
            try:
                cur = self._conn.execute(
                    """UPDATE proposals
                       SET status='approved', promoted_to_id=?, reviewed_by=?,
                           reviewed_at=?, review_note=?
                       WHERE id=? AND status='pending'""",
                    (record.id, reviewer, _now_iso(), note, proposal_id),
                )
                if cur.rowcount != 1:
                    self._conn.rollback()
                    return False
                self._insert_record(record)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return True

    def resolve_proposal(
        self,
        proposal_id: str,
        status: str,
        reviewer: Optional[str] = None,
        note: str = "",
    ) -> bool:
        """Move a pending proposal to rejected or expired. False if not pending."""
        if status not in ("rejected", "expired"):
            raise ValidationError(f"cannot resolve a proposal to {status!r}")
        with self._lock:
            cur = self._conn.execute(
                """UPDATE proposals
                   SET status=?, reviewed_by=?, reviewed_at=?, review_note=?
                   WHERE id=? AND status='pending'""",
                (status, reviewer, _now_iso(), note, proposal_id),
            )
            self._conn.commit()
            return cur.rowcount == 1

    # -- Links -------------------------------------------------------------

    def insert_link(self, link: Link) -> Link:
        """Persist a link."""
        with self._lock:
            self._conn.execute(
                """INSERT INTO links
                   (id, source_id, source_kind, target_id, target_kind,
                    relation, target_mtime, created_at)
                   VALUES (?,?,?,?,?,?,?,?)""",
                (
                    link.id, link.source_id, link.source_kind, link.target_id,
                    link.target_kind, link.relation, link.target_mtime,
                    link.created_at,
                ),
            )
            self._conn.commit()
        return link

    def get_link(self, link_id: str) -> Optional[Link]:
        """Read a link by id."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM links WHERE id=?", (link_id,)
            ).fetchone()
            return self._row_to_link(row) if row else None

    def links_for(self, record_id: str, direction: str = "both") -> List[Link]:
        """Links leaving (from), entering (to) or touching (both) an id."""
        if direction == "from":
            where, params = "source_id=?", (record_id,)
        elif direction == "to":
            where, params = "target_id=?", (record_id,)
        elif direction == "both":
            where, params = "source_id=? OR target_id=?", (record_id, record_id)
        else:
            raise ValidationError(f"invalid direction: {direction!r}")
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM links WHERE {where} ORDER BY created_at, id",
                params,
            ).fetchall()
            return [self._row_to_link(r) for r in rows]

    def list_links(self, target_kind: Optional[str] = None) -> List[Link]:
        """All links, optionally restricted to one target kind."""
        with self._lock:
            if target_kind:
                rows = self._conn.execute(
                    "SELECT * FROM links WHERE target_kind=? ORDER BY created_at, id",
                    (target_kind,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM links ORDER BY created_at, id"
                ).fetchall()
            return [self._row_to_link(r) for r in rows]

    def delete_link(self, link_id: str) -> bool:
        """Delete a link. Returns False if absent."""
        with self._lock:
            cur = self._conn.execute("DELETE FROM links WHERE id=?", (link_id,))
            self._conn.commit()
            return cur.rowcount > 0

    # -- Audit -------------------------------------------------------------

    def append_audit(self, entry: AuditLogEntry) -> None:
        """Append one audit entry."""
        with self._lock:
            self._conn.execute(
                """INSERT INTO audit_log
                   (id, action, actor_type, actor_id, target_id, target_kind,
                    details_json, timestamp)
                   VALUES (?,?,?,?,?,?,?,?)""",
                (
                    entry.id, entry.action, entry.actor_type, entry.actor_id,
                    entry.target_id, entry.target_kind,
                    json.dumps(entry.details), entry.timestamp,
                ),
            )
            self._conn.commit()

    def read_audit(
        self,
        action: Optional[str] = None,
        target_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """Query audit entries (oldest first)."""
        with self._lock:
            conditions = []
            params: list = []
            if action:
                conditions.append("action=?")
                params.append(action)
            if target_id:
                conditions.append("target_id=?")
                params.append(target_id)
            where = " AND ".join(conditions) if conditions else "1=1"
            rows = self._conn.execute(
                f"SELECT * FROM audit_log WHERE {where} "
                f"ORDER BY timestamp ASC, rowid ASC LIMIT ?",
                params + [limit],
            ).fetchall()
            return [
                AuditLogEntry(
                    id=r["id"], action=r["action"], actor_type=r["actor_type"],
                    actor_id=r["actor_id"], target_id=r["target_id"],
                    target_kind=r["target_kind"],
                    details=json.loads(r["details_json"]),
                    timestamp=r["timestamp"],
                )
                for r in rows
            ]

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the workspace store."""
        with self._lock:
            counts = {}
            for kind, table in _TABLES.items():
                counts[kind] = self._conn.execute(
                    f"SELECT COUNT(*) AS cnt FROM {table}"
                ).fetchone()["cnt"]
            by_status = {}
            for row in self._conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM proposals GROUP BY status"
            ).fetchall():
                by_status[row["status"]] = row["cnt"]
            avg = self._conn.execute(
                "SELECT AVG(confidence) AS avg FROM learnings"
            ).fetchone()["avg"]
            links_count = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM links"
            ).fetchone()["cnt"]
            audit_count = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM audit_log"
            ).fetchone()["cnt"]
            return {
                "records": counts,
                "proposals": by_status,
                "links": links_count,
                "audit_entries": audit_count,
                "avg_learning_confidence": round(avg, 4) if avg is not None else None,
            }

    # -- Helpers (call within lock) ----------------------------------------

    def _insert_record(self, record: KnowledgeRecord) -> None:
        kind = record.kind
        cols = _COLUMNS[kind]
        if kind != "learning":
            record.updated_at = _now_iso()
        self._conn.execute(
            f"INSERT OR REPLACE INTO {_table(kind)} ({', '.join(cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)})",
            [getattr(record, c) for c in cols],
        )
        self._conn.execute(
            "DELETE FROM record_tags WHERE record_id=?", (record.id,)
        )
        self._write_tags(record.id, kind, record.tags)

    def _write_tags(self, record_id: str, kind: str, tags: List[str]) -> None:
        for tag in tags:
            tag = tag.strip().lower()
            if tag:
                self._conn.execute(
                    "INSERT OR IGNORE INTO record_tags (record_id, record_kind, tag) "
                    "VALUES (?,?,?)",
                    (record_id, kind, tag),
                )

    def _read_tags(self, record_id: str) -> List[str]:
        rows = self._conn.execute(
            "SELECT tag FROM record_tags WHERE record_id=? ORDER BY tag",
            (record_id,),
        ).fetchall()
        return [r["tag"] for r in rows]

    def _pending_id_for(self, dedupe_key: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT id FROM proposals WHERE dedupe_key=? AND status='pending'",
            (dedupe_key,),
        ).fetchone()
        return row["id"] if row else None

    def _row_to_record(self, kind: str, row: sqlite3.Row) -> KnowledgeRecord:
        """Convert a SQLite Row to the record dataclass of that kind."""
        cls = record_class(kind)
        values = {c: row[c] for c in _COLUMNS[kind]}
        return cls(tags=self._read_tags(row["id"]), **values)

    def _row_to_proposal(self, row: sqlite3.Row) -> Proposal:
        """Convert a SQLite Row to Proposal."""
        return Proposal(
            id=row["id"],
            proposed_as=row["proposed_as"],
            content=row["content"],
            context=row["context"],
            rationale=row["rationale"],
            scope=row["scope"],
            scope_path=row["scope_path"],
            source=row["source"],
            classification_confidence=row["classification_confidence"],
            classification_signals=json.loads(row["classification_signals"]),
            dedupe_key=row["dedupe_key"],
            status=row["status"],
            promoted_to_id=row["promoted_to_id"],
            reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"],
            review_note=row["review_note"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_link(row: sqlite3.Row) -> Link:
        """Convert a SQLite Row to Link."""
        return Link(
            id=row["id"],
            source_id=row["source_id"],
            source_kind=row["source_kind"],
            target_id=row["target_id"],
            target_kind=row["target_kind"],
            relation=row["relation"],
            target_mtime=row["target_mtime"],
            created_at=row["created_at"],
        )
