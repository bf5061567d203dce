"""
Audit Sinks — append-only trail of gated and bypass actions

Every approve / reject / propose / expire / direct write emits one
AuditLogEntry.  Emission goes through emit_audit(), an explicit
non-propagating side call: a failing sink is logged and reported through
the return value, and never rolls back the governed operation.

Privacy rule: direct-write entries carry a SHA-256 hash and the byte size of
the content, never the content itself.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import hashlib
import logging
import sys
from typing import Any, Dict, List, Optional, Protocol, TextIO

from palacectl.types import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def append(self, entry: AuditLogEntry) -> None: ...


class StoreAuditSink:
    """Audit sink writing to the workspace store's audit_log table."""

    def __init__(self, store):
        self._store = store

    def append(self, entry: AuditLogEntry) -> None:
        self._store.append_audit(entry)


class JsonlAuditSink:
    """Audit sink writing one compact JSON object per line."""

    def __init__(self, output: Optional[TextIO] = None):
        """
        Args:
            output: File handle for audit output. None → stderr.
        """
        self._output = output if output is not None else sys.stderr

    def append(self, entry: AuditLogEntry) -> None:
        self._output.write(entry.to_json() + "\n")
        self._output.flush()


class ListAuditSink:
    """In-memory sink (embedding hosts and tests)."""

    def __init__(self):
        self.entries: List[AuditLogEntry] = []

    def append(self, entry: AuditLogEntry) -> None:
        self.entries.append(entry)


class NullAuditSink:
    """Discards every entry."""

    def append(self, entry: AuditLogEntry) -> None:
        return None


def emit_audit(sink: Optional[AuditSink], entry: AuditLogEntry) -> bool:
    """
    Append an entry to the sink. Never raises.

    Returns:
        True if the sink accepted the entry, False if it failed or is None.
    """
    if sink is None:
        return False
    try:
        sink.append(entry)
        return True
    except Exception as exc:
        logger.warning(
            f"audit sink {type(sink).__name__} failed for {entry.action} "
            f"on {entry.target_id}: {exc}"
        )
        return False


def content_detail(content: str) -> Dict[str, Any]:
    """Safe audit fields for content-carrying actions (hash and size only)."""
    data = content.encode("utf-8")
    return {
        "bytes": len(data),
        "hash": hashlib.sha256(data).hexdigest(),
    }
