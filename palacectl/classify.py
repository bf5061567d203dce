"""
Intent Classifier — free text to (kind, confidence, signals)

Deterministic lexical classifier.  Each kind owns a list of phrase detectors
and a list of anchored regex detectors; every detector that fires adds a
weight to its kind's score.  The best score wins and is capped at 0.95.

    decision  commitment phrasing      ("let's", "we will", "switching to")
    idea      speculative framing      ("what if", "maybe we could", "?")
    learning  retrospective/universal  ("TIL", "turns out", "always", "never")

Ties resolve to the lowest-consequence kind: idea, then learning, then
decision.  Tag extraction is a separate pure function.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Pattern, Tuple

DEFAULT_CONFIRMATION_THRESHOLD = 0.7
MAX_CONFIDENCE = 0.95
EXPLICIT_CONFIDENCE = 0.95
FALLBACK_CONFIDENCE = 0.3
MIN_SCORE = 0.1

# Lowest consequence first: strict ">" comparison keeps the earlier kind on ties
KIND_ORDER: Tuple[str, ...] = ("idea", "learning", "decision")


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------

_EXPLICIT_PREFIXES: Dict[str, Tuple[str, ...]] = {
    "decision": ("decision:", "decided:"),
    "idea": ("idea:", "thought:", "suggestion:", "concept:", "proposal:"),
    "learning": ("til:", "note:", "learning:", "lesson:", "insight:",
                 "gotcha:", "takeaway:"),
}

_PHRASES: Dict[str, Tuple[str, ...]] = {
    "decision": (
        "let's", "we should", "we'll", "decided to", "going with",
        "chose", "choosing", "will use", "switching to", "agreed on",
        "the plan is", "we're going to", "final decision", "decided",
        "we decided", "i decided", "going to use", "settled on",
        "picking", "selected", "opting for",
        # technology statements
        "use", "using", "implement", "add", "create", "build",
        "adopt", "integrate", "configure", "set up", "enable",
        "with", "for", "via", "through",
    ),
    "idea": (
        "what if", "maybe we", "could we", "how about", "wondering if",
        "might be worth", "consider", "explore", "perhaps", "possible to",
        "experiment with", "brainstorm", "imagine if", "potentially",
        "what about", "wouldn't it be",
        "try", "test", "investigate", "research",
    ),
    "learning": (
        "til", "learned that", "turns out", "realized", "discovered",
        "found out", "apparently", "important:", "key takeaway",
        "remember that", "don't forget", "figured out", "now i know",
        "it turns out", "fun fact", "did you know",
        "always", "never", "must", "should always", "should never",
    ),
}

_PATTERNS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "decision": (
        ("we-will", r"^we\s+(should|will|are going to)"),
        ("lets", r"^let'?s\s+"),
        ("going-to", r"^i('m| am)\s+going\s+(to|with)"),
        ("decision-is", r"^(the\s+)?decision\s+is"),
        ("plan-is", r"^(the\s+)?plan\s+is\s+to"),
        ("use-x", r"^use\s+\w+"),
        ("implement", r"^implement\s+"),
        ("add-x-to", r"^add\s+\w+\s+(to|for|with)"),
        ("adopt", r"^(adopt|integrate|enable)\s+"),
        ("with-duration", r"\bwith\s+\d+\s*(hour|minute|day)"),
        ("for-concern", r"\bfor\s+(auth|security|performance|caching)"),
        ("switch", r"^switch(ing)?\s+(to|from)\s+"),
    ),
    "idea": (
        ("what-if", r"^what\s+if\s+"),
        ("how-about", r"^how\s+about\s+"),
        ("maybe-we", r"^maybe\s+we\s+(could|should)"),
        ("wouldnt-it", r"^wouldn'?t\s+it\s+be"),
        ("question", r"\?$"),
        ("try", r"^(try|test|investigate)\s+"),
        ("consider-using", r"^(consider|explore)\s+(using|implementing|adding)"),
    ),
    "learning": (
        ("til", r"^til[:\s]"),
        ("learned-that", r"^(i\s+)?learned\s+that"),
        ("turns-out", r"^turns?\s+out"),
        ("note", r"^note[:\s]"),
        ("always", r"^always\s+"),
        ("never", r"^never\s+"),
        ("discovered", r"^(i\s+)?(realized|discovered|found out|figured out)\s+"),
        ("because", r"\s+because\s+.{20,}"),
    ),
}


def _phrase_regex(phrase: str) -> Pattern:
    return re.compile(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)")


_COMPILED_PHRASES: Dict[str, List[Tuple[str, Pattern]]] = {
    kind: [(p, _phrase_regex(p)) for p in phrases]
    for kind, phrases in _PHRASES.items()
}
_COMPILED_PATTERNS: Dict[str, List[Tuple[str, Pattern]]] = {
    kind: [(name, re.compile(rx, re.IGNORECASE)) for name, rx in patterns]
    for kind, patterns in _PATTERNS.items()
}


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Classification:
    """Outcome of classify()."""

    kind: str
    confidence: float
    signals: Tuple[str, ...] = field(default_factory=tuple)

    def needs_confirmation(
        self, threshold: float = DEFAULT_CONFIRMATION_THRESHOLD,
    ) -> bool:
        """Return True if confidence is below the confirmation threshold."""
        return self.confidence < threshold

    def to_dict(self) -> Dict[str, object]:
        """Serialize to a plain dictionary."""
        return {
            "kind": self.kind,
            "confidence": self.confidence,
            "signals": list(self.signals),
        }


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def _phrase_weight(phrase: str, at_start: bool) -> float:
    """Position weight plus specificity weight (longer phrases score more)."""
    weight = 0.35 if at_start else 0.20
    if len(phrase) >= 10:
        weight += 0.30
    elif len(phrase) >= 6:
        weight += 0.20
    else:
        weight += 0.10
    return weight


def _explicit(lower: str):
    for kind in KIND_ORDER:
        for prefix in _EXPLICIT_PREFIXES[kind]:
            if lower.startswith(prefix):
                return Classification(kind, EXPLICIT_CONFIDENCE,
                                      (f"{prefix} (explicit)",))
    return None


def classify(text: str) -> Classification:
    """
    Classify free text into idea / decision / learning.

    Pure and deterministic: identical text yields an identical result.
    Text without any signal is an idea at confidence 0.3 with no signals.
    """
    lower = " ".join(text.lower().split())
    if not lower:
        return Classification("idea", FALLBACK_CONFIDENCE, ())

    explicit = _explicit(lower)
    if explicit is not None:
        return explicit

    scores: Dict[str, float] = {k: 0.0 for k in KIND_ORDER}
    signals: Dict[str, List[str]] = {k: [] for k in KIND_ORDER}

    for kind in KIND_ORDER:
        for phrase, rx in _COMPILED_PHRASES[kind]:
            m = rx.search(lower)
            if m:
                scores[kind] += _phrase_weight(phrase, m.start() == 0)
                signals[kind].append(phrase)
        for name, rx in _COMPILED_PATTERNS[kind]:
            m = rx.search(lower)
            if m:
                scores[kind] += 0.5 if m.start() == 0 else 0.3
                signals[kind].append(f"pattern:{name}")

    best_kind = KIND_ORDER[0]
    best_score = 0.0
    for kind in KIND_ORDER:
        if scores[kind] > best_score:
            best_kind = kind
            best_score = scores[kind]

    if best_score < MIN_SCORE:
        return Classification("idea", FALLBACK_CONFIDENCE, ())

    confidence = round(min(MAX_CONFIDENCE, best_score), 4)
    return Classification(best_kind, confidence, tuple(signals[best_kind]))


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

_HASHTAG = re.compile(r"#(\w+)")
_WORD = re.compile(r"[a-z][a-z0-9+#.-]*[a-z0-9+#]|[a-z]")

# Salient keywords recognised without a hashtag
KEYWORDS = frozenset({
    "api", "auth", "authentication", "authorization", "cache", "caching",
    "ci", "cli", "config", "database", "deploy", "docker", "graphql",
    "grpc", "http", "jwt", "kubernetes", "logging", "migration", "mysql",
    "oauth", "performance", "postgres", "postgresql", "python", "redis",
    "rest", "rust", "security", "sql", "sqlite", "testing", "typescript",
    "webhook", "websocket",
})


def extract_tags(text: str) -> List[str]:
    """
    Pull hashtags and salient keywords from text.

    Lower-cased, de-duplicated, in order of first appearance (hashtags
    first).  Independent of classification.
    """
    tags: List[str] = []
    seen = set()
    for m in _HASHTAG.finditer(text):
        tag = m.group(1).lower()
        if tag not in seen:
            seen.add(tag)
            tags.append(tag)
    for word in _WORD.findall(text.lower()):
        if word in KEYWORDS and word not in seen:
            seen.add(word)
            tags.append(word)
    return tags
