"""
Link Graph — typed edges between records and code locations

Edges run from a record (idea / decision / learning) to another record or to
a code location inside the workspace (``path``, ``path:12`` or
``path:12-40``).  Code targets are resolved through the file oracle when the
link is created and their modification time is snapshotted.  Staleness is
recomputed on every query and never stored.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
from dataclasses import dataclass
from typing import List, Optional

from palacectl.errors import NotFoundError, ValidationError
from palacectl.oracle import FileOracle, OsFileOracle
from palacectl.types import (
    VALID_RECORD_KINDS,
    VALID_RELATIONS,
    Link,
    kind_from_id,
)

logger = logging.getLogger(__name__)

UNKNOWN_KIND = "unknown"

_LINE_RANGE = re.compile(r"^(.+):(\d+)(?:-(\d+))?$")
_EXTENSION = re.compile(r"^[^.\s][^\s]*\.[A-Za-z0-9_+-]{1,10}$")
_DRIVE = re.compile(r"^[A-Za-z]:")


# ---------------------------------------------------------------------------
# Reference parsing
# ---------------------------------------------------------------------------

def infer_kind(ref: str) -> str:
    """
    Infer the kind of a link endpoint from its shape.

    Precedence:
        1. ``IDEA-``, ``DEC-``, ``LRN-`` prefixes -> idea, decision, learning
        2. a ``:line`` or ``:start-end`` suffix    -> code
        3. a path separator (``/`` or ``\\``)      -> code
        4. a file extension (``main.py``)          -> code
        5. anything else                           -> unknown

    Extension-less bare names such as ``Makefile`` are ``unknown``: the
    caller must pass an explicit kind or a path (``./Makefile``).
    """
    ref = ref.strip()
    if not ref:
        return UNKNOWN_KIND
    kind = kind_from_id(ref)
    if kind is not None:
        return kind
    if _LINE_RANGE.match(ref):
        return "code"
    if "/" in ref or "\\" in ref:
        return "code"
    if _EXTENSION.match(ref):
        return "code"
    return UNKNOWN_KIND


@dataclass(frozen=True)
class CodeTarget:
    """Workspace-relative code location."""

    path: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None

    @property
    def ref(self) -> str:
        """Canonical reference string (path[:start[-end]])."""
        if self.start_line is None:
            return self.path
        if self.end_line is None or self.end_line == self.start_line:
            return f"{self.path}:{self.start_line}"
        return f"{self.path}:{self.start_line}-{self.end_line}"


def parse_code_target(ref: str) -> CodeTarget:
    """Split ``path[:start[-end]]`` and normalise the path (POSIX separators)."""
    ref = ref.strip()
    start = end = None
    m = _LINE_RANGE.match(ref)
    if m:
        ref = m.group(1)
        start = int(m.group(2))
        end = int(m.group(3)) if m.group(3) else None
        if start < 1:
            raise ValidationError(f"line numbers start at 1: {start}")
        if end is not None and end < start:
            raise ValidationError(f"invalid line range {start}-{end}")
    path = ref.replace("\\", "/")
    if path.startswith("/") or _DRIVE.match(path):
        raise ValidationError(f"code target must be workspace-relative: {ref!r}")
    path = posixpath.normpath(path)
    if path == "." or path == ".." or path.startswith("../"):
        raise ValidationError(f"code target escapes the workspace: {ref!r}")
    return CodeTarget(path=path, start_line=start, end_line=end)


@dataclass(frozen=True)
class StaleLink:
    """A code link whose target no longer matches its snapshot."""

    link: Link
    reason: str  # "missing", "modified" or "error: ..."

    def to_dict(self):
        return {"link": self.link.to_dict(), "reason": self.reason}


# ---------------------------------------------------------------------------
# LinkGraph
# ---------------------------------------------------------------------------

class LinkGraph:
    """Link operations over a workspace store rooted at ``root``."""

    def __init__(self, store, root: str, oracle: Optional[FileOracle] = None):
        self._store = store
        self._root = root
        self._oracle = oracle or OsFileOracle()

    def _abspath(self, rel_path: str) -> str:
        return os.path.join(self._root, *rel_path.split("/"))

    def add_link(
        self,
        source_id: str,
        target_id: str,
        relation: str = "related",
        source_kind: Optional[str] = None,
        target_kind: Optional[str] = None,
    ) -> str:
        """
        Create a link and return its id.

        Raises:
            ValidationError: bad relation or kind, or unresolvable code target.
            NotFoundError: a record endpoint does not exist.
        """
        if relation not in VALID_RELATIONS:
            raise ValidationError(
                f"invalid relation {relation!r} "
                f"(expected one of {', '.join(sorted(VALID_RELATIONS))})"
            )
        source_kind = source_kind or infer_kind(source_id)
        if source_kind not in VALID_RECORD_KINDS:
            raise ValidationError(
                f"link source must be an idea, decision or learning: {source_id!r}"
            )
        if not self._store.record_exists(source_id, source_kind):
            raise NotFoundError(source_kind, source_id)

        target_kind = target_kind or infer_kind(target_id)
        mtime = None
        if target_kind == "code":
            target = parse_code_target(target_id)
            st = self._oracle.stat(self._abspath(target.path))
            if st.error:
                raise ValidationError(f"cannot resolve {target_id!r}: {st.error}")
            if not st.exists:
                raise ValidationError(f"code target does not exist: {target.path}")
            target_id = target.ref
            mtime = st.mtime
        elif target_kind in VALID_RECORD_KINDS:
            if not self._store.record_exists(target_id, target_kind):
                raise NotFoundError(target_kind, target_id)
        else:
            raise ValidationError(
                f"cannot infer target kind of {target_id!r}; pass target_kind"
            )

        link = Link(
            source_id=source_id, source_kind=source_kind,
            target_id=target_id, target_kind=target_kind,
            relation=relation, target_mtime=mtime,
        )
        self._store.insert_link(link)
        logger.debug(f"link {link.id}: {source_id} -{relation}-> {target_id}")
        return link.id

    def get_link(self, link_id: str) -> Link:
        """Read one link (NotFoundError when absent)."""
        link = self._store.get_link(link_id)
        if link is None:
            raise NotFoundError("link", link_id)
        return link

    def get_links_for(self, record_id: str, direction: str = "both") -> List[Link]:
        """Links from, to, or touching an id."""
        return self._store.links_for(record_id, direction)

    def delete_link(self, link_id: str) -> None:
        """Delete a link (NotFoundError when absent)."""
        if not self._store.delete_link(link_id):
            raise NotFoundError("link", link_id)

    def _stale_reason(self, link: Link) -> Optional[str]:
        target = parse_code_target(link.target_id)
        st = self._oracle.stat(self._abspath(target.path))
        if st.error:
            return f"error: {st.error}"
        if not st.exists:
            return "missing"
        if st.mtime != link.target_mtime:
            return "modified"
        return None

    def list_stale_links(self) -> List[StaleLink]:
        """Re-resolve every code link against the oracle."""
        stale: List[StaleLink] = []
        for link in self._store.list_links(target_kind="code"):
            try:
                reason = self._stale_reason(link)
            except Exception as exc:
                logger.warning(f"link validation skipped {link.id}: {exc}")
                continue
            if reason is not None:
                stale.append(StaleLink(link=link, reason=reason))
        return stale

    def validate_links(self) -> List[str]:
        """Ids of stale code links."""
        return [s.link.id for s in self.list_stale_links()]

    def prune_stale_links(self) -> List[Link]:
        """Delete stale code links and return them."""
        pruned: List[Link] = []
        for stale in self.list_stale_links():
            try:
                if self._store.delete_link(stale.link.id):
                    pruned.append(stale.link)
            except Exception as exc:
                logger.warning(f"link prune skipped {stale.link.id}: {exc}")
        if pruned:
            logger.info(f"pruned {len(pruned)} stale links")
        return pruned
