"""
Error Taxonomy — palacectl exceptions

Validation, not-found and conflict errors propagate immediately and carry the
offending id or value.  Degraded corridor availability raises only when no
cached copy can stand in.  Staleness is never an error: it is returned as data.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from typing import Optional


class PalaceError(Exception):
    """Base class for all palacectl errors."""

    pass


class ValidationError(PalaceError, ValueError):
    """Malformed scope, kind, confidence, relation or content (rejected pre-write)."""

    pass


class ActorNotPermittedError(ValidationError):
    """A human-only operation was attempted by a non-human actor."""

    def __init__(self, operation: str, actor_type: str):
        self.operation = operation
        self.actor_type = actor_type
        super().__init__(
            f"{operation} requires a human actor (got {actor_type!r})"
        )


class NotFoundError(PalaceError, LookupError):
    """Operation on a missing proposal, record, link or linked workspace."""

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class ConflictError(PalaceError):
    """Operation conflicts with the current state of the store."""

    pass


class DuplicateProposalError(ConflictError):
    """A pending proposal with the same dedupe key already exists."""

    def __init__(self, existing_id: str, dedupe_key: str = ""):
        self.existing_id = existing_id
        self.dedupe_key = dedupe_key
        super().__init__(
            f"duplicate proposal: pending proposal {existing_id} has the same content"
        )


class InvalidStateError(ConflictError):
    """Proposal is no longer pending (approved, rejected or expired)."""

    def __init__(self, ident: str, status: str):
        self.ident = ident
        self.status = status
        super().__init__(f"proposal {ident} is already {status}")


class NotLinkedError(NotFoundError, ConflictError):
    """Unlink of a workspace name that is not linked (unlink is not idempotent)."""

    def __init__(self, name: str):
        super().__init__("linked workspace", name)


class CorridorUnavailableError(PalaceError):
    """Linked workspace could not be fetched and no cached copy exists."""

    def __init__(self, name: str, reason: str, url: Optional[str] = None):
        self.name = name
        self.reason = reason
        self.url = url
        super().__init__(
            f"corridor {name!r} unavailable: {reason} (no cache available)"
        )
