"""
CallCoach Trigger Detector
==========================
Decides whether the AI coach should run for an incoming transcript fragment.

Priority order (first match wins):
1. Buying signal        -> trigger now, ignores cooldown      (priority 1)
2. Cooldown             -> nothing within COOLDOWN_MS of last coaching
3. Objection/resistance -> trigger                            (priority 2)
4. Time interval        -> check-in after CHECK_IN_MS quiet    (priority 4)

Pure function of (last coaching timestamp, text, now). All timestamps are
epoch milliseconds.
"""

import time
from dataclasses import dataclass
from typing import List, Optional

from .objection_matcher import strip_accents


COOLDOWN_MS = 5000
CHECK_IN_MS = 25000

REASON_BUYING_SIGNAL = "buying_signal"
REASON_OBJECTION = "objection_detected"
REASON_TIME_INTERVAL = "time_interval"


# =============================================================================
# BUYING SIGNALS - bypass the cooldown, the seller has to act NOW
# =============================================================================

BUYING_KEYWORDS = [
    "como funciona o pagamento", "tem desconto", "posso começar",
    "me manda o link", "quanto custa", "aceita cartão", "fecha pra mim",
    "quando começa", "como assino", "pode parcelar", "qual o valor",
    "como faço pra comprar", "me inscreve", "quero começar",
    "onde eu pago", "tem pix",
]


# =============================================================================
# RESISTANCE - hesitation and generic objections, subject to cooldown
# =============================================================================

RESISTANCE_KEYWORDS = [
    "não sei", "tá caro", "caro", "preciso pensar", "vou ver",
    "não é pra mim", "já tenho", "meu marido", "minha esposa",
    "não tenho dinheiro", "depois eu vejo", "vou pesquisar",
    "não conheço", "já tentei", "não funcionou", "não acredito",
    "sem dinheiro", "apertado", "não é o momento", "mais pra frente",
    "manda por email", "vou analisar",
]


@dataclass(frozen=True)
class TriggerResult:
    should_trigger: bool
    reason: Optional[str] = None
    priority: Optional[int] = None


NO_TRIGGER = TriggerResult(should_trigger=False)


def now_ms() -> int:
    return int(time.time() * 1000)


def _fold(text: str) -> str:
    return strip_accents(text.lower())


def matches_any(text: str, keywords: List[str]) -> bool:
    """Diacritic-insensitive substring match"""
    folded = _fold(text)
    return any(_fold(keyword) in folded for keyword in keywords)


class TriggerDetector:
    """Stateless: all state comes in through the arguments"""

    COOLDOWN_MS = COOLDOWN_MS
    CHECK_IN_MS = CHECK_IN_MS

    def __init__(
        self,
        buying_keywords: Optional[List[str]] = None,
        resistance_keywords: Optional[List[str]] = None,
    ):
        self.buying_keywords = buying_keywords or BUYING_KEYWORDS
        self.resistance_keywords = resistance_keywords or RESISTANCE_KEYWORDS

    def evaluate(
        self,
        last_coaching_at: int,
        text: str,
        now: Optional[int] = None,
    ) -> TriggerResult:
        now = now_ms() if now is None else now
        elapsed = now - (last_coaching_at or 0)

        if matches_any(text, self.buying_keywords):
            return TriggerResult(True, REASON_BUYING_SIGNAL, 1)

        if elapsed < self.COOLDOWN_MS:
            return NO_TRIGGER

        if matches_any(text, self.resistance_keywords):
            return TriggerResult(True, REASON_OBJECTION, 2)

        if elapsed > self.CHECK_IN_MS:
            return TriggerResult(True, REASON_TIME_INTERVAL, 4)

        return NO_TRIGGER
