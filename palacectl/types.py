"""
Knowledge Data Model — Ideas, Decisions, Learnings and their governance

Defines the canonical knowledge records (a closed tagged union over
``kind``), proposals, links, corridor records and audit entries.
Every record carries a scope (palace / room / file) that narrows relevance
but never governance.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from palacectl.errors import ValidationError

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

Scope = Literal["palace", "room", "file"]
RecordKind = Literal["idea", "decision", "learning"]
TargetKind = Literal["idea", "decision", "learning", "code"]
IdeaStatus = Literal["active", "exploring", "implemented", "dropped"]
DecisionStatus = Literal["active", "proposed", "superseded", "reversed"]
Outcome = Literal["unknown", "successful", "failed", "mixed"]
ProposalStatus = Literal["pending", "approved", "rejected", "expired"]
Relation = Literal[
    "supersedes", "implements", "supports",
    "contradicts", "inspired-by", "related",
]
ActorType = Literal["human", "agent"]
Authority = Literal["approved", "unreviewed"]

# Valid values for runtime checks
VALID_SCOPES: set = {"palace", "room", "file"}
VALID_RECORD_KINDS: set = {"idea", "decision", "learning"}
VALID_TARGET_KINDS: set = {"idea", "decision", "learning", "code"}
VALID_IDEA_STATUSES: set = {"active", "exploring", "implemented", "dropped"}
VALID_DECISION_STATUSES: set = {"active", "proposed", "superseded", "reversed"}
VALID_OUTCOMES: set = {"unknown", "successful", "failed", "mixed"}
VALID_PROPOSAL_STATUSES: set = {"pending", "approved", "rejected", "expired"}
VALID_RELATIONS: set = {
    "supersedes", "implements", "supports",
    "contradicts", "inspired-by", "related",
}
VALID_ACTOR_TYPES: set = {"human", "agent"}

# Id prefixes double as the kind convention understood by the link graph
ID_PREFIXES: Dict[str, str] = {
    "idea": "IDEA",
    "decision": "DEC",
    "learning": "LRN",
}


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str) -> str:
    """Generate a unique id with prefix."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


def _parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def content_hash(text: str) -> str:
    """SHA-256 content hash with prefix."""
    h = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"sha256:{h}"


def kind_from_id(record_id: str) -> Optional[str]:
    """Return the record kind encoded in an id prefix, or None."""
    head, sep, _ = record_id.partition("-")
    if not sep:
        return None
    for kind, prefix in ID_PREFIXES.items():
        if head == prefix:
            return kind
    return None


def validate_scope(scope: str, scope_path: str) -> None:
    """Raise ValidationError unless (scope, scope_path) is well formed."""
    if scope not in VALID_SCOPES:
        raise ValidationError(f"invalid scope: {scope!r}")
    if scope == "palace" and scope_path:
        raise ValidationError("palace scope takes no scope_path")
    if scope in ("room", "file") and not scope_path:
        raise ValidationError(f"{scope} scope requires a scope_path")


def validate_confidence(value: float) -> float:
    """Return value as float if within [0, 1], else raise ValidationError."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"confidence must be a number, got {value!r}")
    if value != value or value < 0.0 or value > 1.0:
        raise ValidationError(f"confidence {value} not in [0, 1]")
    return float(value)


def _init_kwargs(cls, d: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keys that are constructor fields of a dataclass."""
    names = {f.name for f in fields(cls) if f.init}
    return {k: v for k, v in d.items() if k in names}


# ---------------------------------------------------------------------------
# Actor
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Actor:
    """Who performs a governed operation."""

    type: ActorType = "agent"
    id: str = ""

    @property
    def is_human(self) -> bool:
        """Return True for human actors."""
        return self.type == "human"

    @classmethod
    def human(cls, actor_id: str = "") -> Actor:
        """Build a human actor."""
        return cls(type="human", id=actor_id)

    @classmethod
    def agent(cls, actor_id: str = "") -> Actor:
        """Build an agent actor."""
        return cls(type="agent", id=actor_id)


# ---------------------------------------------------------------------------
# Knowledge records (closed tagged union over ``kind``)
# ---------------------------------------------------------------------------

@dataclass
class Idea:
    """Speculative thought. Always written directly, never gated."""

    id: str = field(default_factory=lambda: _generate_id("IDEA"))
    content: str = ""
    context: str = ""
    scope: Scope = "palace"
    scope_path: str = ""
    source: str = "agent"
    status: IdeaStatus = "active"
    tags: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    kind: Literal["idea"] = field(default="idea", init=False)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary (includes ``kind``)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Idea:
        """Deserialize from a dictionary."""
        return cls(**_init_kwargs(cls, d))


@dataclass
class Decision:
    """
    Commitment taken for the workspace.

    A decision holds exactly one outcome at a time; it starts ``unknown`` and
    is overwritten by each outcome review.
    """

    id: str = field(default_factory=lambda: _generate_id("DEC"))
    content: str = ""
    rationale: str = ""
    context: str = ""
    scope: Scope = "palace"
    scope_path: str = ""
    source: str = "agent"
    status: DecisionStatus = "active"
    outcome: Outcome = "unknown"
    outcome_note: str = ""
    outcome_at: Optional[str] = None
    authority: Authority = "unreviewed"
    promoted_from: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    kind: Literal["decision"] = field(default="decision", init=False)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary (includes ``kind``)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Decision:
        """Deserialize from a dictionary."""
        return cls(**_init_kwargs(cls, d))


@dataclass
class Learning:
    """
    Retrospective or universal knowledge.

    Confidence is the only ranking and eviction signal: reinforcement bumps
    use_count and last_used, decay lowers confidence, prune removes rows
    below the floor.
    """

    id: str = field(default_factory=lambda: _generate_id("LRN"))
    content: str = ""
    scope: Scope = "palace"
    scope_path: str = ""
    source: str = "agent"
    confidence: float = 0.5
    use_count: int = 0
    last_used: Optional[str] = None
    authority: Authority = "unreviewed"
    promoted_from: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    kind: Literal["learning"] = field(default="learning", init=False)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary (includes ``kind``)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Learning:
        """Deserialize from a dictionary."""
        return cls(**_init_kwargs(cls, d))


KnowledgeRecord = Union[Idea, Decision, Learning]

_RECORD_CLASSES = {"idea": Idea, "decision": Decision, "learning": Learning}


def record_class(kind: str):
    """Return the dataclass for a record kind."""
    try:
        return _RECORD_CLASSES[kind]
    except KeyError:
        raise ValidationError(f"invalid record kind: {kind!r}") from None


def record_from_dict(d: Dict[str, Any]) -> KnowledgeRecord:
    """Rebuild a record from its dict form, dispatching on ``kind``."""
    cls = record_class(d.get("kind", ""))
    return cls(**_init_kwargs(cls, d))


# ---------------------------------------------------------------------------
# Proposal
# ---------------------------------------------------------------------------

def compute_dedupe_key(
    proposed_as: str, content: str, scope: str, scope_path: str,
) -> str:
    """Deterministic fingerprint of (proposed_as, content, scope, scope_path)."""
    raw = f"{proposed_as}:{content}:{scope}:{scope_path}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


@dataclass
class Proposal:
    """Pending write of a decision or learning, awaiting human review."""

    id: str = field(default_factory=lambda: _generate_id("PROP"))
    proposed_as: Literal["decision", "learning"] = "learning"
    content: str = ""
    context: str = ""
    rationale: str = ""
    scope: Scope = "palace"
    scope_path: str = ""
    source: str = "agent"
    classification_confidence: float = 0.0
    classification_signals: List[str] = field(default_factory=list)
    dedupe_key: str = ""
    status: ProposalStatus = "pending"
    promoted_to_id: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    review_note: str = ""
    created_at: str = field(default_factory=_now_iso)

    def __post_init__(self):
        if not self.dedupe_key:
            self.dedupe_key = compute_dedupe_key(
                self.proposed_as, self.content, self.scope, self.scope_path,
            )

    @property
    def is_pending(self) -> bool:
        """Return True while the proposal awaits review."""
        return self.status == "pending"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Proposal:
        """Deserialize from a dictionary."""
        return cls(**_init_kwargs(cls, d))


# ---------------------------------------------------------------------------
# Link
# ---------------------------------------------------------------------------

@dataclass
class Link:
    """Directed typed edge from a record to a record or a code location."""

    id: str = field(default_factory=lambda: _generate_id("LNK"))
    source_id: str = ""
    source_kind: RecordKind = "idea"
    target_id: str = ""
    target_kind: TargetKind = "idea"
    relation: Relation = "related"
    target_mtime: Optional[float] = None  # code targets only
    created_at: str = field(default_factory=_now_iso)

    @property
    def is_code(self) -> bool:
        """Return True when the target is a code location."""
        return self.target_kind == "code"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Link:
        """Deserialize from a dictionary."""
        return cls(**_init_kwargs(cls, d))


# ---------------------------------------------------------------------------
# Corridor records
# ---------------------------------------------------------------------------

@dataclass
class PersonalLearning:
    """Workspace-independent copy of a learning, held in the corridor store."""

    id: str = field(default_factory=lambda: _generate_id("LRN"))
    origin_workspace: str = ""
    content: str = ""
    confidence: float = 0.5
    source: str = "promoted"
    created_at: str = field(default_factory=_now_iso)
    last_used: Optional[str] = None
    use_count: int = 0
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> PersonalLearning:
        """Deserialize from a dictionary."""
        return cls(**_init_kwargs(cls, d))


@dataclass
class LinkedWorkspace:
    """Registered neighbour workspace (local directory or http(s) endpoint)."""

    name: str = ""
    path: str = ""
    added_at: str = field(default_factory=_now_iso)
    last_accessed: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        """Return True when the path is an http(s) URL."""
        return self.path.startswith(("http://", "https://"))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> LinkedWorkspace:
        """Deserialize from a dictionary."""
        return cls(**_init_kwargs(cls, d))


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@dataclass
class AuditLogEntry:
    """Append-only record of a gated or bypass action."""

    id: str = field(default_factory=lambda: _generate_id("AUD"))
    action: str = ""
    actor_type: ActorType = "agent"
    actor_id: str = ""
    target_id: str = ""
    target_kind: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    def to_json(self) -> str:
        """Serialize to a compact JSON line."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AuditLogEntry:
        """Deserialize from a dictionary."""
        return cls(**_init_kwargs(cls, d))
