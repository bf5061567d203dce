"""
Confidence Lifecycle — reinforce, weaken, decay, prune

Operates identically on workspace Learnings and corridor PersonalLearnings
through the LearningTable protocol implemented by both stores.

    reinforce  use_count += 1, last_used = now (confidence untouched)
    weaken     confidence = max(0, confidence - delta)
    decay      weaken every learning idle for more than N days
    prune      delete learnings below the confidence floor

Decay and prune are monotonic: confidence only ever goes down and a learning
already at 0 is not counted again.  Batches log per-record failures and carry
on; a failed record keeps its prior state and is retried on the next run.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple

from palacectl.config import LifecycleConfig
from palacectl.errors import NotFoundError, ValidationError
from palacectl.types import _now_iso, _parse_iso

logger = logging.getLogger(__name__)

# Confidence is rounded to this many decimals after arithmetic
_PRECISION = 6


class LearningTable(Protocol):
    def learning_activity(self) -> List[Tuple[str, float, str]]: ...

    def learning_confidence(self, learning_id: str) -> Optional[float]: ...

    def touch_learning(self, learning_id: str, when: Optional[str] = None) -> bool: ...

    def set_learning_confidence(self, learning_id: str, confidence: float) -> bool: ...

    def learnings_below(self, floor: float) -> List[str]: ...

    def delete_learning(self, learning_id: str) -> bool: ...


@dataclass
class MaintenanceReport:
    """Counts returned by run_maintenance()."""

    decayed: int = 0
    pruned: int = 0

    def to_dict(self):
        return {"decayed": self.decayed, "pruned": self.pruned}


def _lowered(confidence: float, delta: float) -> float:
    return round(max(0.0, confidence - delta), _PRECISION)


def reinforce(table: LearningTable, learning_id: str) -> None:
    """Record one use of a learning. Confidence is not changed."""
    if not table.touch_learning(learning_id, _now_iso()):
        raise NotFoundError("learning", learning_id)


def weaken(
    table: LearningTable, learning_id: str, delta: float = 0.1,
) -> float:
    """Lower one learning's confidence by delta (floored at 0). Returns the new value."""
    if delta < 0:
        raise ValidationError(f"delta must be >= 0, got {delta}")
    confidence = table.learning_confidence(learning_id)
    if confidence is None:
        raise NotFoundError("learning", learning_id)
    value = _lowered(confidence, delta)
    table.set_learning_confidence(learning_id, value)
    return value


def decay(
    table: LearningTable,
    older_than_days: int,
    delta: float,
    now: Optional[datetime] = None,
) -> int:
    """
    Lower confidence of every learning idle for more than older_than_days.

    Idle time runs from last_used, or created_at when never used.  Learnings
    already at 0 are skipped.

    Returns:
        Number of learnings whose confidence was lowered.
    """
    if older_than_days < 0:
        raise ValidationError(f"older_than_days must be >= 0, got {older_than_days}")
    if delta < 0:
        raise ValidationError(f"delta must be >= 0, got {delta}")
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=older_than_days)
    count = 0
    for learning_id, confidence, active_at in table.learning_activity():
        if confidence <= 0.0:
            continue
        try:
            if _parse_iso(active_at) >= cutoff:
                continue
            if table.set_learning_confidence(learning_id, _lowered(confidence, delta)):
                count += 1
        except Exception as exc:
            logger.warning(f"decay skipped {learning_id}: {exc}")
    if count:
        logger.info(f"decay: {count} learnings lowered by {delta} "
                    f"(idle > {older_than_days} days)")
    return count


def prune(table: LearningTable, confidence_floor: float) -> int:
    """
    Permanently remove learnings with confidence < confidence_floor.

    Returns:
        Number of learnings removed.
    """
    count = 0
    for learning_id in table.learnings_below(confidence_floor):
        try:
            if table.delete_learning(learning_id):
                count += 1
        except Exception as exc:
            logger.warning(f"prune skipped {learning_id}: {exc}")
    if count:
        logger.info(f"prune: {count} learnings below {confidence_floor} removed")
    return count


def run_maintenance(
    table: LearningTable,
    config: Optional[LifecycleConfig] = None,
    now: Optional[datetime] = None,
) -> MaintenanceReport:
    """Decay then prune, so rows decayed now are pruned in the same pass."""
    config = config or LifecycleConfig()
    decayed = decay(table, config.decay_days, config.decay_delta, now=now)
    pruned = prune(table, config.confidence_floor)
    return MaintenanceReport(decayed=decayed, pruned=pruned)
