"""
CallCoach Live Summary Agent
Manager-facing "strategic summary" of the call, at most once every
SUMMARY_INTERVAL_MS per call, published to the call's summary channel.

Same rate-limit discipline as the coach: last_summary_at is advanced
before the AI call and stays advanced on failure.
"""

import logging
import time
from typing import Callable, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .call_session import CallSession, summary_channel
from .prompts import SUMMARY_RESPONSE_SCHEMA, SUMMARY_SYSTEM_PROMPT, build_summary_user_prompt
from .response_parser import parse_json_object

logger = logging.getLogger(__name__)


SUMMARY_INTERVAL_MS = 20000
MAX_SUMMARY_POINTS = 3


class LiveSummary(BaseModel):
    status: str
    summary_points: List[str] = Field(default_factory=list)
    sentiment: Literal["Positive", "Neutral", "Negative", "Tense"] = "Neutral"
    spin_phase: Optional[str] = None

    @field_validator("summary_points")
    @classmethod
    def keep_top_points(cls, points: List[str]) -> List[str]:
        return points[:MAX_SUMMARY_POINTS]


class SummaryAgent:

    def __init__(
        self,
        completion,
        fabric,
        store,
        interval_ms: int = SUMMARY_INTERVAL_MS,
        clock: Callable[[], int] = None,
    ):
        self.completion = completion
        self.fabric = fabric
        self.store = store
        self.interval_ms = interval_ms
        self.clock = clock or (lambda: int(time.time() * 1000))

    def claim(self, session: CallSession) -> bool:
        now = self.clock()
        if now - session.last_summary_at < self.interval_ms:
            return False
        session.last_summary_at = now
        return True

    async def maybe_summarize(self, session: CallSession) -> Optional[LiveSummary]:
        if self.completion is None or not session.transcript or not self.claim(session):
            return None

        try:
            await self.store.save(session)
            raw = await self.completion.complete(
                SUMMARY_SYSTEM_PROMPT,
                build_summary_user_prompt(session),
                SUMMARY_RESPONSE_SCHEMA,
            )
            summary = LiveSummary.model_validate(parse_json_object(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Live summary for call {session.call_id} unparseable: {e}")
            return None
        except Exception as e:
            logger.error(f"Live summary for call {session.call_id} failed: {e}")
            return None

        try:
            await self.fabric.publish(summary_channel(session.call_id), {
                "callId": session.call_id,
                "timestamp": self.clock(),
                **summary.model_dump(),
            })
        except Exception as e:
            logger.error(f"Could not publish live summary for call {session.call_id}: {e}")
        return summary
