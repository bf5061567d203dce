"""
Tests for palacectl.workspace — the workspace handle end to end.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from palacectl import open_corridor, open_workspace
from palacectl.errors import NotFoundError, ValidationError
from palacectl.fetch import parse_artifact
from palacectl.types import Actor, Decision, Learning, Proposal

HUMAN = Actor.human("olivier")
AGENT = Actor.agent("assistant")


@pytest.fixture
def ws(tmp_path):
    root = tmp_path / "repo"
    (root / "src").mkdir(parents=True)
    (root / "src" / "auth.py").write_text("def login(): ...\n")
    w = open_workspace(str(root))
    yield w
    w.close()


class TestOpen:
    def test_creates_marker_and_store(self, ws):
        assert ws.name == "repo"
        assert os.path.isdir(os.path.join(ws.root, ".palace"))
        assert ws.store.db_path == os.path.join(ws.root, ".palace", "memory.db")

    def test_root_must_exist(self, tmp_path):
        with pytest.raises(ValidationError):
            open_workspace(str(tmp_path / "missing"))

    def test_reopen(self, tmp_path):
        root = tmp_path / "repo"
        root.mkdir()
        with open_workspace(str(root)) as w:
            idea = w.governance.add_idea("persisted idea")
        with open_workspace(str(root)) as w:
            assert w.get_record(idea.id).content == "persisted idea"


class TestEndToEnd:
    def test_propose_approve_link_outcome(self, ws):
        result = ws.governance.store_text("Let's use JWT for authentication", AGENT)
        decision = ws.governance.approve(result.proposal_id, HUMAN)
        lrn = ws.governance.direct_write("learning", "Always rotate signing keys",
                                         HUMAN, confidence=0.6)
        ws.links.add_link(decision.id, "src/auth.py:1", "implements")
        ws.links.add_link(decision.id, lrn.id, "supports")
        ws.governance.record_outcome(decision.id, "successful", actor=HUMAN)

        assert isinstance(ws.get_record(decision.id), Decision)
        assert ws.get_record(decision.id).outcome == "successful"
        assert ws.get_record(lrn.id).use_count == 1
        assert len(ws.links.get_links_for(decision.id, "from")) == 2

        actions = [e.action for e in ws.store.read_audit()]
        assert actions == ["propose", "approve", "direct_write", "record_outcome"]

    def test_get_record_missing(self, ws):
        with pytest.raises(NotFoundError):
            ws.get_record("DEC-missing")

    def test_list_and_search(self, ws):
        ws.governance.add_idea("What if we add caching?")
        ws.governance.add_idea("Dark mode", scope="room", scope_path="ui")
        assert len(ws.list_records("idea")) == 2
        assert len(ws.list_records("idea", scope="room")) == 1
        assert [r.content for r in ws.search("caching")] == ["What if we add caching?"]
        with pytest.raises(ValidationError):
            ws.list_records("code")
        with pytest.raises(ValidationError):
            ws.search("x", kind="proposal")


class TestMaintain:
    def test_maintain_report(self, ws, tmp_path):
        now = datetime.now(timezone.utc)
        old = (now - timedelta(days=40)).isoformat()
        ws.store.write_record(Learning(content="fading", confidence=0.15, last_used=old))
        ws.store.write_record(Learning(content="solid", confidence=0.9))
        ws.store.insert_proposal(Proposal(
            proposed_as="decision", content="stale proposal",
            created_at=(now - timedelta(days=10)).isoformat(),
        ))
        idea = ws.governance.add_idea("x")
        link_id = ws.links.add_link(idea.id, "src/auth.py")
        (tmp_path / "repo" / "src" / "auth.py").unlink()

        report = ws.maintain(now=now)
        assert report["decayed"] == 1
        assert report["pruned"] == 1
        assert len(report["expired_proposals"]) == 1
        assert report["stale_links"] == [link_id]
        # stale links are reported, not removed
        assert ws.links.get_link(link_id).id == link_id

    def test_decay_and_prune_overrides(self, ws):
        lrn = ws.store.write_record(Learning(content="x", confidence=0.5))
        future = datetime.now(timezone.utc) + timedelta(days=2)
        assert ws.decay(older_than_days=1, delta=0.3, now=future) == 1
        assert ws.prune(confidence_floor=0.3) == 1
        with pytest.raises(NotFoundError):
            ws.get_record(lrn.id)

    def test_reinforce(self, ws):
        lrn = ws.store.write_record(Learning(content="x"))
        ws.reinforce(lrn.id)
        assert ws.list_learnings()[0].use_count == 1


class TestShareable:
    def test_write_shareable(self, ws):
        ws.store.write_record(Learning(content="keep", confidence=0.8))
        ws.store.write_record(Learning(content="drop", confidence=0.2))
        path = ws.write_shareable(min_confidence=0.5)
        with open(path, "rb") as f:
            name, learnings = parse_artifact(f.read())
        assert name == "repo"
        assert [l.content for l in learnings] == ["keep"]

    def test_export_document(self, ws):
        doc = ws.export_shareable()
        assert doc["schema"] == 1
        assert doc["learnings"] == []
        json.dumps(doc)

    def test_corridor_reads_shareable(self, ws, tmp_path):
        ws.store.write_record(Learning(content="published", confidence=0.7))
        ws.write_shareable()
        with open_corridor(str(tmp_path / "home")) as c:
            c.link("repo", ws.root)
            result = c.get_linked_learnings("repo")
            assert [l.content for l in result.learnings] == ["published"]

    def test_stats(self, ws):
        ws.governance.add_idea("x")
        assert ws.stats()["records"]["idea"] == 1
        assert ws.stats()["audit_entries"] == 1
