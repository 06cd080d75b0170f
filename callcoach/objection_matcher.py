"""
CallCoach Objection Matcher
===========================
Instant (no AI) matching of live transcript text against a script's
objection catalog.

Scoring per trigger phrase:
1. Normalized substring containment -> 1.0
2. Otherwise: fraction of the phrase's words present in the text
   (bag-of-words, order does not matter)

The best (objection, phrase) pair across the whole catalog wins; ties keep
the first one encountered. Matches at or below MIN_MATCH_SCORE are dropped.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from typing import List, Optional


MIN_MATCH_SCORE = 0.4


@dataclass
class Objection:
    """A known objection from a sales script (reference data)"""
    id: str
    trigger_phrases: List[str] = field(default_factory=list)
    suggested_response: str = ""
    mental_trigger: str = ""
    coaching_tip: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Objection":
        return cls(
            id=str(data["id"]),
            trigger_phrases=list(data.get("trigger_phrases") or []),
            suggested_response=data.get("suggested_response") or "",
            mental_trigger=data.get("mental_trigger") or "",
            coaching_tip=data.get("coaching_tip") or "",
        )


@dataclass
class ObjectionMatch:
    """Best catalog hit for a piece of transcript"""
    score: float
    objection_id: str
    trigger_phrase: str
    suggested_response: str
    mental_trigger: str
    coaching_tip: str


# =============================================================================
# TEXT NORMALIZATION
# =============================================================================

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def strip_accents(text: str) -> str:
    """'não é caro' -> 'nao e caro'"""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize(text: str) -> str:
    """Lowercase, accent-free, punctuation-free, single-spaced"""
    text = strip_accents(text.lower())
    text = _PUNCTUATION.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


# =============================================================================
# MATCHING
# =============================================================================

def score_phrase(normalized_text: str, normalized_phrase: str) -> float:
    """Score one (already normalized) trigger phrase against the text"""
    if not normalized_phrase:
        return 0.0
    if normalized_phrase in normalized_text:
        return 1.0

    text_words = set(normalized_text.split())
    phrase_words = normalized_phrase.split()
    matches = sum(1 for word in phrase_words if word in text_words)
    return matches / len(phrase_words)


class ObjectionMatcher:
    """Fuzzy keyword matcher from transcript text to an objection catalog"""

    def __init__(self, min_score: float = MIN_MATCH_SCORE):
        self.min_score = min_score

    def match(self, text: str, objections: List[Objection]) -> Optional[ObjectionMatch]:
        normalized_text = normalize(text)
        if not normalized_text:
            return None

        best: Optional[ObjectionMatch] = None
        best_score = 0.0

        for objection in objections:
            for phrase in objection.trigger_phrases:
                score = score_phrase(normalized_text, normalize(phrase))
                # Strictly greater: first encountered wins on ties
                if score > best_score:
                    best_score = score
                    best = ObjectionMatch(
                        score=score,
                        objection_id=objection.id,
                        trigger_phrase=phrase,
                        suggested_response=objection.suggested_response,
                        mental_trigger=objection.mental_trigger,
                        coaching_tip=objection.coaching_tip,
                    )

        if best is not None and best.score > self.min_score:
            return best
        return None
