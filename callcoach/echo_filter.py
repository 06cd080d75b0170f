"""
CallCoach Dedup / Echo Filter
=============================
Decides whether a freshly transcribed fragment should be dropped before it
reaches the transcript and the coach.

Two audio channels are captured per call: the seller's microphone and the
meeting tab (counterpart). Both leak into each other, and the speech model
re-transcribes overlapping segments, so the same sentence often arrives
more than once.

Checks, in order:
1. Hallucination - too few letters, or a known speech-model artifact
2. Duplicate     - similar to a recent fragment of the SAME channel
3. Echo          - similar to a recent fragment of the OTHER channel.
                   Whichever channel is being evaluated is taken as the
                   leak (asymmetric heuristic: genuinely simultaneous
                   identical speech gets over-discarded)
"""

import re
from enum import Enum
from typing import List, Optional, Set

from .call_session import CallSession, ChannelRole, RecentFragment


DEDUP_WINDOW_MS = 8000
MIN_ALPHA_CHARS = 5
JACCARD_THRESHOLD = 0.5


class DiscardReason(str, Enum):
    HALLUCINATION = "hallucination"
    DUPLICATE = "duplicate"
    ECHO = "echo"


# Known artifacts of speech models on silence / music (pt-BR and en)
HALLUCINATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"legendas? (pela|por) (comunidade )?amara\.org",
        r"amara\.org",
        r"obrigad[oa] por assistir",
        r"inscreva-se( no canal)?",
        r"legendado por",
        r"tradu[çc][ãa]o (e legendas )?por",
        r"thanks? (you )?for watching",
        r"subtitles? by",
        # Short phrase repeated 3+ times in a row
        r"\b(\w+(?:\s+\w+){0,3})\b(?:[\s,.!?]+\1\b){2,}",
    ]
]

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize(text: str) -> str:
    text = _PUNCTUATION.sub("", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def alpha_count(text: str) -> int:
    return sum(1 for c in text.strip() if c.isalpha())


def is_hallucination(text: str) -> bool:
    """Independent of session state"""
    if alpha_count(text) < MIN_ALPHA_CHARS:
        return True
    stripped = text.strip()
    return any(pattern.search(stripped) for pattern in HALLUCINATION_PATTERNS)


def _words(normalized: str) -> Set[str]:
    return {word for word in normalized.split() if len(word) > 1}


def is_similar(a: str, b: str) -> bool:
    """Equal, contained, or Jaccard word overlap > 0.5"""
    norm_a, norm_b = normalize(a), normalize(b)
    if not norm_a or not norm_b:
        return False
    if norm_a == norm_b:
        return True
    if norm_a in norm_b or norm_b in norm_a:
        return True

    words_a, words_b = _words(norm_a), _words(norm_b)
    union = words_a | words_b
    if not union:
        return False
    return len(words_a & words_b) / len(union) > JACCARD_THRESHOLD


class EchoFilter:
    """
    Stateless over the session's dedup window; callers must serialize
    check() per call so two near-simultaneous duplicates cannot both pass.
    """

    def __init__(self, window_ms: int = DEDUP_WINDOW_MS):
        self.window_ms = window_ms

    def prune(self, fragments: List[RecentFragment], now: int) -> List[RecentFragment]:
        return [f for f in fragments if now - f.timestamp <= self.window_ms]

    def check(self, text: str, role: ChannelRole, session: CallSession, now: int) -> Optional[DiscardReason]:
        """Returns the discard reason, or None when the fragment was kept and recorded"""
        if is_hallucination(text):
            return DiscardReason.HALLUCINATION

        session.recent_fragments = self.prune(session.recent_fragments, now)

        # Most recent first
        for fragment in reversed(session.recent_fragments):
            if not is_similar(text, fragment.text):
                continue
            if fragment.role is role:
                return DiscardReason.DUPLICATE
            return DiscardReason.ECHO

        session.recent_fragments.append(RecentFragment(text=text, role=role, timestamp=now))
        return None

    def should_discard(self, text: str, role: ChannelRole, session: CallSession, now: int) -> bool:
        return self.check(text, role, session, now) is not None
