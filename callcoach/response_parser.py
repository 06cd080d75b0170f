"""
CallCoach AI response parsing.

The AI boundary is the only place raw JSON is probed: everything past
ResponseParser.parse() works with validated models. Anything malformed
falls back to a "skip, no stage change" result.
"""

import json
import logging
import re
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class CoachingPayload(BaseModel):
    type: Literal["tip", "alert", "reinforcement", "objection", "buying_signal"]
    urgency: Literal["low", "medium", "high"]
    content: str = Field(max_length=300)


class NextStepPayload(BaseModel):
    action: str
    question: Optional[str] = None


class LeadProfilePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["emotional", "rational", "skeptical", "anxious", "enthusiastic"]
    concerns: List[str] = Field(default_factory=list)
    interests: List[str] = Field(default_factory=list)
    buying_signals: List[str] = Field(default_factory=list, alias="buyingSignals")


class CoachResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_step: int = Field(alias="currentStep")
    coaching: Optional[CoachingPayload] = None
    next_step: Optional[NextStepPayload] = Field(default=None, alias="nextStep")
    lead_profile: Optional[LeadProfilePayload] = Field(default=None, alias="leadProfile")
    stage_changed: bool = Field(default=False, alias="stageChanged")
    should_skip: bool = Field(default=False, alias="shouldSkipResponse")


SKIP_RESPONSE = CoachResponse(currentStep=1, stageChanged=False, shouldSkipResponse=True)

_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(raw: str) -> str:
    return _CODE_FENCE.sub("", raw or "").strip()


def parse_json_object(raw: str) -> dict:
    """Loads the first JSON object of a model reply (fences and chatter tolerated)"""
    cleaned = strip_code_fences(raw)
    try:
        data = json.loads(cleaned)
    except ValueError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise
        data = json.loads(cleaned[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


class ResponseParser:

    def parse(self, raw: str) -> CoachResponse:
        try:
            return CoachResponse.model_validate(parse_json_object(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Failed to parse coach response, skipping cycle: {e}")
            return SKIP_RESPONSE.model_copy(deep=True)
