"""
CallCoach Post-Call Analyzer
Whole-transcript review sent to the seller on call end and stored as the
call summary. Any failure yields an empty analysis.
"""

import logging
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .call_session import CallSession
from .prompts import POST_CALL_RESPONSE_SCHEMA, POST_CALL_SYSTEM_PROMPT, build_post_call_user_prompt
from .response_parser import parse_json_object

logger = logging.getLogger(__name__)


RESULTS = ("CONVERTED", "FOLLOW_UP", "LOST", "UNKNOWN")


class ObjectionFaced(BaseModel):
    objection: str
    handled: bool = False
    response: Optional[str] = None


class PostCallAnalysis(BaseModel):
    script_adherence_score: Optional[float] = Field(default=None, ge=0, le=100)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    objections_faced: List[ObjectionFaced] = Field(default_factory=list)
    buying_signals: List[str] = Field(default_factory=list)
    lead_sentiment: Optional[Literal["POSITIVE", "NEUTRAL", "NEGATIVE", "MIXED"]] = None
    result: str = "UNKNOWN"
    ai_notes: Optional[str] = None

    @field_validator("result", mode="before")
    @classmethod
    def known_result(cls, value) -> str:
        value = str(value or "").upper()
        return value if value in RESULTS else "UNKNOWN"


class PostCallAnalyzer:

    def __init__(self, completion):
        self.completion = completion

    async def generate(self, session: CallSession, script) -> dict:
        if self.completion is None or not session.transcript:
            return {}

        try:
            raw = await self.completion.complete(
                POST_CALL_SYSTEM_PROMPT,
                build_post_call_user_prompt(session, script.name, script.stage_names),
                POST_CALL_RESPONSE_SCHEMA,
            )
            analysis = PostCallAnalysis.model_validate(parse_json_object(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Post-call analysis for call {session.call_id} unparseable: {e}")
            return {}
        except Exception as e:
            logger.error(f"Post-call analysis for call {session.call_id} failed: {e}")
            return {}

        return analysis.model_dump()
