"""
Tests for palacectl.lifecycle — reinforce, weaken, decay and prune.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from datetime import datetime, timedelta, timezone

import pytest

from palacectl.config import LifecycleConfig
from palacectl.corridor import CorridorStore
from palacectl.errors import NotFoundError, ValidationError
from palacectl.lifecycle import decay, prune, reinforce, run_maintenance, weaken
from palacectl.store import MemoryStore
from palacectl.types import Learning, PersonalLearning

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _iso(days_ago: float) -> str:
    return (NOW - timedelta(days=days_ago)).isoformat()


@pytest.fixture
def store():
    s = MemoryStore()
    yield s
    s.close()


class _FlakyTable:
    """LearningTable whose writes fail for one id."""

    def __init__(self, rows, bad_id):
        self.rows = {r[0]: [r[1], r[2]] for r in rows}
        self.bad_id = bad_id

    def learning_activity(self):
        return [(k, v[0], v[1]) for k, v in self.rows.items()]

    def learning_confidence(self, learning_id):
        row = self.rows.get(learning_id)
        return row[0] if row else None

    def touch_learning(self, learning_id, when=None):
        return learning_id in self.rows

    def set_learning_confidence(self, learning_id, confidence):
        if learning_id == self.bad_id:
            raise RuntimeError("locked")
        self.rows[learning_id][0] = confidence
        return True

    def learnings_below(self, floor):
        return [k for k, v in self.rows.items() if v[0] < floor]

    def delete_learning(self, learning_id):
        if learning_id == self.bad_id:
            raise RuntimeError("locked")
        return self.rows.pop(learning_id, None) is not None


# ---------------------------------------------------------------------------
# Reinforce / weaken
# ---------------------------------------------------------------------------


class TestReinforce:
    def test_bumps_use_count_only(self, store):
        lrn = store.write_record(Learning(content="x", confidence=0.6))
        reinforce(store, lrn.id)
        reinforce(store, lrn.id)
        got = store.get_learning(lrn.id)
        assert got.use_count == 2
        assert got.last_used is not None
        assert got.confidence == pytest.approx(0.6)

    def test_missing(self, store):
        with pytest.raises(NotFoundError):
            reinforce(store, "LRN-missing")


class TestWeaken:
    def test_lowers(self, store):
        lrn = store.write_record(Learning(content="x", confidence=0.6))
        assert weaken(store, lrn.id, 0.25) == pytest.approx(0.35)
        assert store.get_learning(lrn.id).confidence == pytest.approx(0.35)

    def test_floored_at_zero(self, store):
        lrn = store.write_record(Learning(content="x", confidence=0.05))
        assert weaken(store, lrn.id) == 0.0

    def test_negative_delta(self, store):
        lrn = store.write_record(Learning(content="x"))
        with pytest.raises(ValidationError):
            weaken(store, lrn.id, -0.1)

    def test_missing(self, store):
        with pytest.raises(NotFoundError):
            weaken(store, "LRN-missing")

    def test_reads_single_row(self):
        class _NoScan(_FlakyTable):
            def learning_activity(self):
                raise AssertionError("full scan")

        table = _NoScan([("LRN-a", 0.5, "2026-01-01T00:00:00+00:00")], bad_id=None)
        assert weaken(table, "LRN-a", 0.2) == pytest.approx(0.3)
        assert table.rows["LRN-a"][0] == pytest.approx(0.3)
        with pytest.raises(NotFoundError):
            weaken(table, "LRN-b")

    def test_personal_store(self):
        store = CorridorStore()
        p = store.upsert_learning(PersonalLearning(content="x", confidence=0.4))
        assert weaken(store, p.id, 0.1) == pytest.approx(0.3)
        assert store.learning_confidence(p.id) == pytest.approx(0.3)
        store.close()


# ---------------------------------------------------------------------------
# Decay / prune
# ---------------------------------------------------------------------------


class TestDecay:
    def test_idle_learning_decays_then_prunes(self, store):
        lrn = store.write_record(Learning(content="stale", confidence=0.15,
                                          last_used=_iso(40)))
        assert decay(store, 30, 0.1, now=NOW) == 1
        assert store.get_learning(lrn.id).confidence == pytest.approx(0.05)
        assert prune(store, 0.1) == 1
        assert store.get_learning(lrn.id) is None

    def test_recent_untouched(self, store):
        lrn = store.write_record(Learning(content="fresh", confidence=0.5,
                                          last_used=_iso(5)))
        assert decay(store, 30, 0.1, now=NOW) == 0
        assert store.get_learning(lrn.id).confidence == pytest.approx(0.5)

    def test_created_at_used_when_never_used(self, store):
        store.write_record(Learning(content="old", created_at=_iso(60)))
        store.write_record(Learning(content="new", created_at=_iso(1)))
        assert decay(store, 30, 0.1, now=NOW) == 1

    def test_zero_is_skipped(self, store):
        store.write_record(Learning(content="x", confidence=0.0, last_used=_iso(90)))
        assert decay(store, 30, 0.1, now=NOW) == 0

    def test_monotonic_to_zero(self, store):
        lrn = store.write_record(Learning(content="x", confidence=0.25,
                                          last_used=_iso(90)))
        for _ in range(5):
            decay(store, 30, 0.1, now=NOW)
        assert store.get_learning(lrn.id).confidence == 0.0

    def test_invalid_arguments(self, store):
        with pytest.raises(ValidationError):
            decay(store, -1, 0.1)
        with pytest.raises(ValidationError):
            decay(store, 30, -0.1)

    def test_failure_skipped_and_logged(self, caplog):
        table = _FlakyTable(
            [("LRN-a", 0.5, _iso(40)), ("LRN-b", 0.5, _iso(40))], bad_id="LRN-a",
        )
        assert decay(table, 30, 0.1, now=NOW) == 1
        assert table.rows["LRN-a"][0] == 0.5
        assert table.rows["LRN-b"][0] == pytest.approx(0.4)
        assert "LRN-a" in caplog.text


class TestPrune:
    def test_strictly_below_floor(self, store):
        store.write_record(Learning(content="at", confidence=0.1))
        store.write_record(Learning(content="below", confidence=0.09))
        assert prune(store, 0.1) == 1
        assert [l.content for l in store.list_learnings()] == ["at"]

    def test_failure_skipped(self):
        table = _FlakyTable(
            [("LRN-a", 0.0, _iso(1)), ("LRN-b", 0.0, _iso(1))], bad_id="LRN-a",
        )
        assert prune(table, 0.1) == 1
        assert "LRN-a" in table.rows


class TestMaintenance:
    def test_decay_then_prune(self, store):
        store.write_record(Learning(content="dying", confidence=0.15, last_used=_iso(40)))
        store.write_record(Learning(content="healthy", confidence=0.9, last_used=_iso(40)))
        report = run_maintenance(store, LifecycleConfig(), now=NOW)
        assert report.to_dict() == {"decayed": 2, "pruned": 1}
        assert [l.content for l in store.list_learnings()] == ["healthy"]
        assert store.list_learnings()[0].confidence == pytest.approx(0.8)
