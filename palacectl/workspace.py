"""
Workspace Handle — one workspace root, its store, governance and link graph

    ws = open_workspace("/path/to/repo")
    ws.governance.store_text("Let's use JWT for authentication", actor)
    ws.links.add_link(decision_id, "src/auth.py:10-40", "implements")
    ws.maintain()
    ws.close()

The store lives at ``<root>/.palace/memory.db``.  The handle is a context
manager and owns its store connection.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from palacectl import lifecycle
from palacectl.audit import AuditSink
from palacectl.config import PalaceConfig
from palacectl.errors import NotFoundError, ValidationError
from palacectl.fetch import SHAREABLE_FILE, build_artifact
from palacectl.governance import Governance
from palacectl.links import LinkGraph
from palacectl.oracle import FileOracle
from palacectl.store import MemoryStore
from palacectl.types import VALID_RECORD_KINDS, KnowledgeRecord, Learning

logger = logging.getLogger(__name__)


class Workspace:
    """Open workspace: store + governance + link graph + lifecycle."""

    def __init__(
        self,
        root: str,
        config: Optional[PalaceConfig] = None,
        oracle: Optional[FileOracle] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.root = os.path.abspath(os.path.expanduser(root))
        if not os.path.isdir(self.root):
            raise ValidationError(f"workspace root is not a directory: {root}")
        self.config = config or PalaceConfig()
        self.marker_dir = os.path.join(self.root, self.config.store.marker)
        os.makedirs(self.marker_dir, exist_ok=True)
        self.store = MemoryStore(
            os.path.join(self.marker_dir, self.config.store.db_name),
            wal_mode=self.config.store.wal_mode,
        )
        self.governance = Governance(
            self.store, self.config.governance, self.config.lifecycle,
            audit_sink=audit_sink,
        )
        self.links = LinkGraph(self.store, self.root, oracle)

    @property
    def name(self) -> str:
        return os.path.basename(self.root)

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> Workspace:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- Records -----------------------------------------------------------

    def get_record(self, record_id: str, kind: Optional[str] = None) -> KnowledgeRecord:
        """Read a record (NotFoundError when absent)."""
        record = self.store.read_record(record_id, kind)
        if record is None:
            raise NotFoundError(kind or "record", record_id)
        return record

    def list_records(
        self,
        kind: str,
        scope: Optional[str] = None,
        scope_path: Optional[str] = None,
        status: Optional[str] = None,
        tag: Optional[str] = None,
        limit: int = 100,
    ) -> List[KnowledgeRecord]:
        if kind not in VALID_RECORD_KINDS:
            raise ValidationError(f"invalid record kind: {kind!r}")
        return self.store.list_records(kind, scope=scope, scope_path=scope_path,
                                       status=status, tag=tag, limit=limit)

    def search(
        self, query: str, kind: Optional[str] = None, limit: int = 50,
    ) -> List[KnowledgeRecord]:
        """Substring search over ideas, decisions and learnings."""
        if kind is not None and kind not in VALID_RECORD_KINDS:
            raise ValidationError(f"invalid record kind: {kind!r}")
        return self.store.search_records(query, kind=kind, limit=limit)

    def list_learnings(
        self, min_confidence: float = 0.0, min_use_count: int = 0,
        limit: Optional[int] = None,
    ) -> List[Learning]:
        return self.store.list_learnings(min_confidence=min_confidence,
                                         min_use_count=min_use_count, limit=limit)

    # -- Lifecycle ---------------------------------------------------------

    def reinforce(self, learning_id: str) -> None:
        lifecycle.reinforce(self.store, learning_id)

    def decay(
        self,
        older_than_days: Optional[int] = None,
        delta: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> int:
        cfg = self.config.lifecycle
        return lifecycle.decay(
            self.store,
            cfg.decay_days if older_than_days is None else older_than_days,
            cfg.decay_delta if delta is None else delta,
            now=now,
        )

    def prune(self, confidence_floor: Optional[float] = None) -> int:
        floor = self.config.lifecycle.confidence_floor \
            if confidence_floor is None else confidence_floor
        return lifecycle.prune(self.store, floor)

    def maintain(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Periodic maintenance, invoked by the host.

        Decays then prunes learnings, and expires stale proposals.  Stale
        code links are reported, not removed.
        """
        report = lifecycle.run_maintenance(self.store, self.config.lifecycle, now=now)
        expired = self.governance.expire_stale(now=now)
        stale = self.links.validate_links()
        result = report.to_dict()
        result.update({"expired_proposals": expired, "stale_links": stale})
        logger.info(f"maintenance on {self.name}: {result['decayed']} decayed, "
                    f"{result['pruned']} pruned, {len(expired)} expired")
        return result

    # -- Shareable artifact ------------------------------------------------

    def export_shareable(self, min_confidence: float = 0.0) -> Dict[str, Any]:
        """Artifact document published to linked workspaces."""
        return build_artifact(self.name, self.store.export_learnings(min_confidence))

    def write_shareable(
        self, path: Optional[str] = None, min_confidence: float = 0.0,
    ) -> str:
        """Write the artifact (default ``<root>/.palace/shareable.json``)."""
        path = path or os.path.join(self.marker_dir, SHAREABLE_FILE)
        doc = self.export_shareable(min_confidence)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)
        return path

    def stats(self) -> Dict[str, Any]:
        return self.store.stats()


def open_workspace(
    root: str,
    config: Optional[PalaceConfig] = None,
    oracle: Optional[FileOracle] = None,
    audit_sink: Optional[AuditSink] = None,
) -> Workspace:
    """Open (creating ``<root>/.palace`` if needed) a workspace."""
    return Workspace(root, config=config, oracle=oracle, audit_sink=audit_sink)
