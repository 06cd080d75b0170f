"""
CallCoach coaching events.

One dataclass per event kind; every event renders to the same wire payload
{type, content, urgency, metadata} that the seller client consumes inside a
COACHING_MESSAGE envelope. Events are seller-only: never relayed to the
counterpart.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass
class CoachingTip:
    """AI-generated tip / alert / reinforcement / objection / buying_signal card"""
    coaching_type: str
    content: str
    urgency: str = "medium"
    next_action: Optional[str] = None
    next_question: Optional[str] = None
    trigger_reason: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "type": self.coaching_type,
            "content": self.content,
            "urgency": self.urgency,
            "metadata": {
                "nextStep": {"action": self.next_action, "question": self.next_question}
                if self.next_action or self.next_question
                else None,
                "trigger": self.trigger_reason,
            },
        }


@dataclass
class ObjectionAlert:
    """Instant catalog match, emitted before (and independently of) the AI"""
    objection_id: str
    trigger_phrase: str
    content: str
    score: float
    urgency: str = "medium"
    mental_trigger: str = ""
    coaching_tip: str = ""
    success_rate: Optional[float] = None
    top_recommendation: bool = False

    def to_payload(self) -> dict:
        return {
            "type": "objection",
            "content": self.content,
            "urgency": self.urgency,
            "metadata": {
                "objectionId": self.objection_id,
                "triggerPhrase": self.trigger_phrase,
                "score": round(self.score, 2),
                "mentalTrigger": self.mental_trigger,
                "tip": self.coaching_tip,
                "successRate": self.success_rate,
                "topRecommendation": self.top_recommendation,
            },
        }


@dataclass
class StageChange:
    step: int
    step_name: str
    total_steps: int

    @property
    def progress(self) -> float:
        if not self.total_steps:
            return 0.0
        return round(min(self.step, self.total_steps) / self.total_steps, 2)

    def to_payload(self) -> dict:
        return {
            "type": "stage_change",
            "content": f"Etapa {self.step}: {self.step_name}",
            "urgency": "low",
            "metadata": {
                "currentStep": self.step,
                "stepName": self.step_name,
                "progress": self.progress,
            },
        }


@dataclass
class LeadProfileUpdate:
    profile_type: str
    concerns: List[str] = field(default_factory=list)
    interests: List[str] = field(default_factory=list)
    buying_signals: List[str] = field(default_factory=list)

    def to_profile(self) -> dict:
        return {
            "type": self.profile_type,
            "concerns": list(self.concerns),
            "interests": list(self.interests),
            "buyingSignals": list(self.buying_signals),
        }

    def to_payload(self) -> dict:
        return {
            "type": "lead_profile",
            "content": self.profile_type,
            "urgency": "low",
            "metadata": self.to_profile(),
        }


CoachEvent = Union[CoachingTip, ObjectionAlert, StageChange, LeadProfileUpdate]
