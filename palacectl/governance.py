"""
Proposal Governance — write gating for decisions and learnings

Flow:
    text -> classify -> idea?      -> direct write (never gated)
                     -> decision / learning -> dedupe -> pending Proposal
    pending -> approve (human) -> canonical record, authority=approved
            -> reject  (human) -> no record
            -> expire  (age)   -> reported, never deleted

Human actors may bypass the queue with a direct write; the audit entry then
carries a content hash instead of the content.  Every gated or bypass action
emits one audit entry through emit_audit() (best effort).

Content screening (empty, oversized, secret-like content) runs before any
write and rejects with ValidationError.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from palacectl import lifecycle
from palacectl.audit import AuditSink, StoreAuditSink, content_detail, emit_audit
from palacectl.classify import Classification, classify, extract_tags
from palacectl.config import GovernanceConfig, LifecycleConfig
from palacectl.errors import (
    ActorNotPermittedError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from palacectl.types import (
    VALID_DECISION_STATUSES,
    VALID_IDEA_STATUSES,
    VALID_PROPOSAL_STATUSES,
    VALID_RECORD_KINDS,
    Actor,
    AuditLogEntry,
    Decision,
    Idea,
    KnowledgeRecord,
    Learning,
    Proposal,
    _parse_iso,
    validate_confidence,
    validate_scope,
)

logger = logging.getLogger(__name__)

RECORDED_OUTCOMES = {"successful", "failed", "mixed"}

# Maintenance actor used for time-based expiry
SYSTEM_ACTOR = Actor.agent("palacectl")

# ---------------------------------------------------------------------------
# Secret screening
# ---------------------------------------------------------------------------

_SECRET_PATTERNS = [
    re.compile(r"-----BEGIN\s+(RSA\s+|EC\s+|OPENSSH\s+)?PRIVATE\s+KEY-----", re.IGNORECASE),
    re.compile(r"(?:api[_-]?key|apikey)\s*[:=]\s*\S{8,}", re.IGNORECASE),
    re.compile(r"(?:secret|token|password|passwd|pwd)\s*[:=]\s*\S{8,}", re.IGNORECASE),
    re.compile(r"(?:aws_access_key_id|aws_secret_access_key)\s*[:=]\s*\S+", re.IGNORECASE),
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"ghp_[A-Za-z0-9]{36,}"),
    re.compile(r"sk-[A-Za-z0-9]{20,}"),
    re.compile(r"eyJ[A-Za-z0-9_-]{20,}\.[A-Za-z0-9_-]{20,}"),
]


def find_secrets(text: str) -> List[str]:
    """Return descriptions of secret patterns found in text."""
    return [
        f"secret pattern #{i} matched"
        for i, pattern in enumerate(_SECRET_PATTERNS)
        if pattern.search(text)
    ]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class StoreResult:
    """Outcome of Governance.store_text()."""

    kind: str
    classification: Classification
    record_id: Optional[str] = None
    proposal_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    needs_confirmation: bool = False

    @property
    def pending(self) -> bool:
        """True when the text is waiting in the proposal queue."""
        return self.proposal_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "classification": self.classification.to_dict(),
            "record_id": self.record_id,
            "proposal_id": self.proposal_id,
            "tags": list(self.tags),
            "needs_confirmation": self.needs_confirmation,
        }


# ---------------------------------------------------------------------------
# Governance
# ---------------------------------------------------------------------------

class Governance:
    """Propose / approve / reject / expire / direct-write over one workspace store."""

    def __init__(
        self,
        store,
        config: Optional[GovernanceConfig] = None,
        lifecycle_config: Optional[LifecycleConfig] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self._store = store
        self._config = config or GovernanceConfig()
        self._lifecycle = lifecycle_config or LifecycleConfig()
        self._audit = audit_sink if audit_sink is not None else StoreAuditSink(store)

    # -- Guards ------------------------------------------------------------

    def screen_content(self, content: str) -> str:
        """Return stripped content or raise ValidationError."""
        text = (content or "").strip()
        if not text:
            raise ValidationError("content must not be empty")
        if len(text) > self._config.max_content_length:
            raise ValidationError(
                f"content too long ({len(text)} chars > "
                f"{self._config.max_content_length})"
            )
        if self._config.secret_patterns_enabled:
            hits = find_secrets(text)
            if hits:
                raise ValidationError(f"content rejected: {'; '.join(hits)}")
        return text

    @staticmethod
    def _require_human(operation: str, actor: Optional[Actor]) -> Actor:
        if actor is None or not actor.is_human:
            raise ActorNotPermittedError(operation, actor.type if actor else "none")
        return actor

    def _emit(
        self,
        action: str,
        actor: Actor,
        target_id: str,
        target_kind: str,
        details: Dict[str, Any],
    ) -> bool:
        return emit_audit(self._audit, AuditLogEntry(
            action=action, actor_type=actor.type, actor_id=actor.id,
            target_id=target_id, target_kind=target_kind, details=details,
        ))

    # -- Proposals ---------------------------------------------------------

    def propose(
        self,
        content: str,
        proposed_as: Optional[str] = None,
        actor: Optional[Actor] = None,
        scope: str = "palace",
        scope_path: str = "",
        context: str = "",
        rationale: str = "",
    ) -> Proposal:
        """
        Queue a decision or learning for review.

        With proposed_as the classifier is skipped (confidence 1.0, signals
        ["explicit"]).  Otherwise the text is classified; text classified as
        an idea cannot be proposed.

        Raises:
            ValidationError: bad scope, content or kind.
            DuplicateProposalError: a pending proposal has the same dedupe key.
        """
        if proposed_as is not None:
            if proposed_as not in ("decision", "learning"):
                raise ValidationError(
                    f"only decisions and learnings are proposed, not {proposed_as!r}"
                )
            classification = Classification(proposed_as, 1.0, ("explicit",))
        else:
            classification = classify(content)
            if classification.kind == "idea":
                raise ValidationError(
                    "text classifies as an idea; ideas are written directly"
                )
        return self._propose(
            content, classification, actor or Actor.agent(),
            scope, scope_path, context, rationale,
        )

    def _propose(
        self,
        content: str,
        classification: Classification,
        actor: Actor,
        scope: str,
        scope_path: str,
        context: str,
        rationale: str,
    ) -> Proposal:
        text = self.screen_content(content)
        validate_scope(scope, scope_path)
        proposal = Proposal(
            proposed_as=classification.kind,
            content=text,
            context=context,
            rationale=rationale,
            scope=scope,
            scope_path=scope_path,
            source=actor.id or actor.type,
            classification_confidence=classification.confidence,
            classification_signals=list(classification.signals),
        )
        self._store.insert_proposal(proposal)
        self._emit("propose", actor, proposal.id, "proposal", {
            "proposed_as": proposal.proposed_as,
            "dedupe_key": proposal.dedupe_key,
            "confidence": proposal.classification_confidence,
        })
        logger.info(f"proposal {proposal.id} pending ({proposal.proposed_as})")
        return proposal

    def get_proposal(self, proposal_id: str) -> Proposal:
        """Read a proposal (NotFoundError when absent)."""
        proposal = self._store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError("proposal", proposal_id)
        return proposal

    def list_proposals(
        self,
        status: Optional[str] = "pending",
        proposed_as: Optional[str] = None,
        limit: int = 100,
    ) -> List[Proposal]:
        """Pending proposals by default; pass status=None for every state."""
        if status is not None and status not in VALID_PROPOSAL_STATUSES:
            raise ValidationError(f"invalid proposal status: {status!r}")
        return self._store.list_proposals(status=status, proposed_as=proposed_as,
                                          limit=limit)

    def _pending(self, proposal_id: str) -> Proposal:
        proposal = self.get_proposal(proposal_id)
        if not proposal.is_pending:
            raise InvalidStateError(proposal.id, proposal.status)
        return proposal

    def _materialize(self, proposal: Proposal) -> KnowledgeRecord:
        tags = extract_tags(proposal.content)
        if proposal.proposed_as == "decision":
            return Decision(
                content=proposal.content,
                rationale=proposal.rationale,
                context=proposal.context,
                scope=proposal.scope,
                scope_path=proposal.scope_path,
                source=proposal.source,
                authority="approved",
                promoted_from=proposal.id,
                tags=tags,
            )
        confidence = proposal.classification_confidence or 0.5
        return Learning(
            content=proposal.content,
            scope=proposal.scope,
            scope_path=proposal.scope_path,
            source=proposal.source,
            confidence=validate_confidence(confidence),
            authority="approved",
            promoted_from=proposal.id,
            tags=tags,
        )

    def approve(
        self, proposal_id: str, reviewer: Actor, note: str = "",
    ) -> KnowledgeRecord:
        """
        Approve a pending proposal and materialize its record (human only).

        The record insert and the proposal transition share one transaction.

        Raises:
            ActorNotPermittedError: reviewer is not human.
            NotFoundError: no such proposal.
            InvalidStateError: proposal already approved, rejected or expired.
        """
        self._require_human("approve", reviewer)
        proposal = self._pending(proposal_id)
        record = self._materialize(proposal)
        if not self._store.materialize_proposal(
            proposal.id, record, reviewer.id or reviewer.type, note,
        ):
            raise InvalidStateError(proposal.id, self.get_proposal(proposal.id).status)
        self._emit("approve", reviewer, proposal.id, "proposal", {
            "proposed_as": proposal.proposed_as,
            "promoted_to_id": record.id,
            "note": note,
        })
        logger.info(f"proposal {proposal.id} approved -> {record.id}")
        return record

    def reject(
        self, proposal_id: str, reviewer: Actor, note: str = "",
    ) -> Proposal:
        """Reject a pending proposal (human only). No record is created."""
        self._require_human("reject", reviewer)
        proposal = self._pending(proposal_id)
        if not self._store.resolve_proposal(
            proposal.id, "rejected", reviewer.id or reviewer.type, note,
        ):
            raise InvalidStateError(proposal.id, self.get_proposal(proposal.id).status)
        self._emit("reject", reviewer, proposal.id, "proposal", {
            "proposed_as": proposal.proposed_as,
            "note": note,
        })
        logger.info(f"proposal {proposal.id} rejected")
        return self.get_proposal(proposal.id)

    def expire(self, proposal_id: str, actor: Optional[Actor] = None) -> Proposal:
        """Expire one pending proposal."""
        actor = actor or SYSTEM_ACTOR
        proposal = self._pending(proposal_id)
        if not self._store.resolve_proposal(proposal.id, "expired", None, ""):
            raise InvalidStateError(proposal.id, self.get_proposal(proposal.id).status)
        self._emit("expire", actor, proposal.id, "proposal", {
            "proposed_as": proposal.proposed_as,
            "created_at": proposal.created_at,
        })
        return self.get_proposal(proposal.id)

    def expire_stale(
        self,
        max_age_hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Expire pending proposals older than max_age_hours.

        Defaults to GovernanceConfig.proposal_expiry_hours.  Per-proposal
        failures are logged and skipped.

        Returns:
            Ids of the proposals that were expired.
        """
        hours = self._config.proposal_expiry_hours if max_age_hours is None \
            else max_age_hours
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=hours)
        expired: List[str] = []
        for proposal in self._store.list_proposals(status="pending", limit=None):
            try:
                if _parse_iso(proposal.created_at) >= cutoff:
                    continue
                if self._store.resolve_proposal(proposal.id, "expired", None, ""):
                    expired.append(proposal.id)
                    self._emit("expire", SYSTEM_ACTOR, proposal.id, "proposal", {
                        "proposed_as": proposal.proposed_as,
                        "created_at": proposal.created_at,
                    })
            except Exception as exc:
                logger.warning(f"expiry skipped {proposal.id}: {exc}")
        if expired:
            logger.info(f"expired {len(expired)} stale proposals (> {hours}h)")
        return expired

    # -- Direct writes -----------------------------------------------------

    def direct_write(
        self,
        kind: str,
        content: str,
        actor: Optional[Actor] = None,
        scope: str = "palace",
        scope_path: str = "",
        context: str = "",
        rationale: str = "",
        confidence: Optional[float] = None,
        tags: Optional[List[str]] = None,
    ) -> KnowledgeRecord:
        """
        Write a canonical record immediately, skipping the proposal queue.

        Ideas are accepted from any actor.  Decisions and learnings require
        a human actor.  The audit entry holds a content hash, not the content.
        """
        if kind not in VALID_RECORD_KINDS:
            raise ValidationError(f"invalid record kind: {kind!r}")
        actor = actor or Actor.agent()
        if kind != "idea":
            self._require_human(f"direct write of a {kind}", actor)
        text = self.screen_content(content)
        validate_scope(scope, scope_path)
        all_tags = extract_tags(text)
        for tag in tags or []:
            tag = tag.strip().lower()
            if tag and tag not in all_tags:
                all_tags.append(tag)
        source = actor.id or actor.type

        record: KnowledgeRecord
        if kind == "idea":
            record = Idea(content=text, context=context, scope=scope,
                          scope_path=scope_path, source=source, tags=all_tags)
        elif kind == "decision":
            record = Decision(content=text, rationale=rationale, context=context,
                              scope=scope, scope_path=scope_path, source=source,
                              authority="approved", tags=all_tags)
        else:
            record = Learning(
                content=text, scope=scope, scope_path=scope_path, source=source,
                confidence=validate_confidence(0.5 if confidence is None else confidence),
                authority="approved", tags=all_tags,
            )
        self._store.write_record(record)
        details = {"kind": kind}
        details.update(content_detail(text))
        self._emit("direct_write", actor, record.id, kind, details)
        logger.info(f"direct write {record.id} ({kind}) by {actor.type}")
        return record

    def add_idea(
        self,
        content: str,
        actor: Optional[Actor] = None,
        scope: str = "palace",
        scope_path: str = "",
        context: str = "",
    ) -> Idea:
        """Write an idea (always direct)."""
        return self.direct_write("idea", content, actor, scope=scope,
                                 scope_path=scope_path, context=context)

    def store_text(
        self,
        text: str,
        actor: Optional[Actor] = None,
        kind: Optional[str] = None,
        direct: bool = False,
        scope: str = "palace",
        scope_path: str = "",
        context: str = "",
        rationale: str = "",
    ) -> StoreResult:
        """
        Classify text and route it.

        idea                     -> direct write
        decision / learning      -> pending proposal
        ... with direct=True     -> direct write (human actors only)

        An explicit kind skips the classifier (confidence 1.0).
        """
        actor = actor or Actor.agent()
        if kind is not None:
            if kind not in VALID_RECORD_KINDS:
                raise ValidationError(f"invalid record kind: {kind!r}")
            classification = Classification(kind, 1.0, ("explicit",))
        else:
            classification = classify(text)
        tags = extract_tags(text)
        result = StoreResult(
            kind=classification.kind,
            classification=classification,
            tags=tags,
            needs_confirmation=classification.needs_confirmation(
                self._config.confirmation_threshold
            ),
        )
        if classification.kind == "idea" or direct:
            record = self.direct_write(
                classification.kind, text, actor, scope=scope,
                scope_path=scope_path, context=context, rationale=rationale,
                confidence=classification.confidence
                if classification.kind == "learning" else None,
            )
            result.record_id = record.id
        else:
            proposal = self._propose(text, classification, actor, scope,
                                     scope_path, context, rationale)
            result.proposal_id = proposal.id
        return result

    # -- Record mutations --------------------------------------------------

    def set_status(self, kind: str, record_id: str, status: str) -> KnowledgeRecord:
        """Change the status of an idea or decision."""
        valid = {"idea": VALID_IDEA_STATUSES,
                 "decision": VALID_DECISION_STATUSES}.get(kind)
        if valid is None:
            raise ValidationError(f"{kind} records have no status")
        if status not in valid:
            raise ValidationError(f"invalid {kind} status: {status!r}")
        if not self._store.update_status(kind, record_id, status):
            raise NotFoundError(kind, record_id)
        return self._store.read_record(record_id, kind)

    def record_outcome(
        self,
        decision_id: str,
        outcome: str,
        note: str = "",
        actor: Optional[Actor] = None,
    ) -> Decision:
        """
        Record the outcome of a decision and feed it back to linked learnings.

        successful reinforces every learning linked to the decision, failed
        weakens them, mixed leaves them unchanged.
        """
        if outcome not in RECORDED_OUTCOMES:
            raise ValidationError(
                f"invalid outcome {outcome!r} (expected successful, failed or mixed)"
            )
        if not self._store.set_decision_outcome(decision_id, outcome, note):
            raise NotFoundError("decision", decision_id)
        actor = actor or Actor.agent()

        affected: List[str] = []
        if outcome != "mixed":
            for link in self._store.links_for(decision_id, "both"):
                if link.source_kind == "learning":
                    learning_id = link.source_id
                elif link.target_kind == "learning":
                    learning_id = link.target_id
                else:
                    continue
                try:
                    if outcome == "successful":
                        lifecycle.reinforce(self._store, learning_id)
                    else:
                        lifecycle.weaken(self._store, learning_id,
                                         self._lifecycle.weaken_delta)
                    affected.append(learning_id)
                except Exception as exc:
                    logger.warning(f"outcome feedback skipped {learning_id}: {exc}")

        self._emit("record_outcome", actor, decision_id, "decision", {
            "outcome": outcome,
            "learnings": affected,
        })
        return self._store.read_record(decision_id, "decision")
