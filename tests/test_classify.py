"""
Tests for palacectl.classify — intent classification and tag extraction.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from palacectl.classify import (
    DEFAULT_CONFIRMATION_THRESHOLD,
    Classification,
    classify,
    extract_tags,
)


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------


class TestKinds:
    @pytest.mark.parametrize("text", [
        "Let's use JWT for authentication",
        "We will migrate the queue to Redis",
        "Switching to TypeScript for the frontend",
        "The plan is to ship weekly",
    ])
    def test_decisions(self, text):
        assert classify(text).kind == "decision"

    @pytest.mark.parametrize("text", [
        "What if we add caching?",
        "Maybe we could shard the index",
        "How about a dark mode",
        "wouldn't it be nice to have previews",
    ])
    def test_ideas(self, text):
        assert classify(text).kind == "idea"

    @pytest.mark.parametrize("text", [
        "TIL sqlite needs WAL mode for concurrent readers",
        "Turns out the cache was never invalidated",
        "Always validate input at the boundary",
        "Never commit generated files",
        "I realized the retries were hiding the timeout",
    ])
    def test_learnings(self, text):
        assert classify(text).kind == "learning"

    def test_decision_scenario_confidence(self):
        c = classify("Let's use JWT for authentication")
        assert c.kind == "decision"
        assert c.confidence == pytest.approx(0.95)
        assert "let's" in c.signals
        assert "pattern:lets" in c.signals

    def test_idea_scenario(self):
        c = classify("What if we add caching?")
        assert c.kind == "idea"
        assert "what if" in c.signals
        assert "pattern:question" in c.signals


# ---------------------------------------------------------------------------
# Explicit prefixes
# ---------------------------------------------------------------------------


class TestExplicitPrefixes:
    @pytest.mark.parametrize("text,kind", [
        ("decision: keep the monorepo", "decision"),
        ("Decided: postgres over mysql", "decision"),
        ("idea: a plugin system", "idea"),
        ("proposal: rename the module", "idea"),
        ("TIL: pytest caches fixtures per scope", "learning"),
        ("note: the build needs node 20", "learning"),
        ("gotcha: timezone-naive timestamps", "learning"),
    ])
    def test_prefix_wins(self, text, kind):
        c = classify(text)
        assert c.kind == kind
        assert c.confidence == pytest.approx(0.95)
        assert len(c.signals) == 1
        assert c.signals[0].endswith("(explicit)")


# ---------------------------------------------------------------------------
# Scoring rules
# ---------------------------------------------------------------------------


class TestScoring:
    def test_no_signal_defaults_to_idea(self):
        c = classify("the quarterly numbers")
        assert c.kind == "idea"
        assert c.confidence == pytest.approx(0.3)
        assert c.signals == ()

    def test_empty_text(self):
        c = classify("   ")
        assert c.kind == "idea"
        assert c.confidence == pytest.approx(0.3)

    def test_confidence_is_capped(self):
        c = classify("Let's use Redis for caching with 24 hour expiry via the proxy")
        assert c.confidence <= 0.95

    def test_confidence_in_unit_interval(self):
        samples = [
            "", "x", "what if", "always", "use redis", "TIL: a", "maybe?",
            "we should use postgres because it handles concurrent writes well",
        ]
        for text in samples:
            c = classify(text)
            assert 0.0 <= c.confidence <= 1.0

    def test_tie_resolves_to_idea(self):
        # "test" (idea) and "must" (learning) weigh the same mid-sentence
        c = classify("the suite must test it")
        assert c.kind == "idea"

    def test_phrases_match_whole_words(self):
        # "until" must not trigger the "til" learning signal
        c = classify("wait until tomorrow")
        assert "til" not in c.signals

    def test_deterministic(self):
        text = "We should probably consider using Redis for caching?"
        first = classify(text)
        for _ in range(5):
            assert classify(text) == first

    def test_whitespace_normalized(self):
        assert classify("Let's   use\nJWT") == classify("let's use jwt")


class TestNeedsConfirmation:
    def test_default_threshold(self):
        assert DEFAULT_CONFIRMATION_THRESHOLD == 0.7
        assert Classification("idea", 0.3).needs_confirmation()
        assert not Classification("decision", 0.95).needs_confirmation()

    def test_custom_threshold(self):
        c = Classification("learning", 0.5)
        assert not c.needs_confirmation(0.4)
        assert c.needs_confirmation(0.6)

    def test_to_dict(self):
        d = Classification("decision", 0.9, ("let's",)).to_dict()
        assert d == {"kind": "decision", "confidence": 0.9, "signals": ["let's"]}


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


class TestExtractTags:
    def test_hashtags(self):
        assert extract_tags("Fix #Auth and #perf today") == ["auth", "perf"]

    def test_keywords(self):
        assert extract_tags("Let's use JWT for authentication") == [
            "jwt", "authentication",
        ]

    def test_dedup_and_order(self):
        tags = extract_tags("#redis cache in Redis, then redis again #cache")
        assert tags == ["redis", "cache"]

    def test_no_tags(self):
        assert extract_tags("nothing salient here") == []

    def test_independent_of_classification(self):
        assert extract_tags("What if we add caching?") == ["caching"]
