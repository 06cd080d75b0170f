"""
CallCoach Coach Engine
======================
Per-fragment coaching pipeline for one call.

1. Instant layer   - catalog objection match (> 0.7), no AI, never rate-limited
2. Trigger         - buying signal / resistance / check-in (trigger_detector)
3. AI coaching     - bounded prompt -> Completion -> validated parse
4. Emission        - coaching card, stage change, lead profile

RATE LIMIT INVARIANT: last_coaching_at is advanced BEFORE the AI call, in
the same synchronous step as the trigger check. A slow or failing AI call
therefore never causes a retry storm; the next attempt waits for the next
natural trigger.
"""

import logging
import time
from typing import Awaitable, Callable, List, Optional

from .call_session import CallSession, ChannelRole
from .coach_events import CoachEvent, CoachingTip, LeadProfileUpdate, ObjectionAlert, StageChange
from .objection_matcher import ObjectionMatcher
from .prompts import COACH_RESPONSE_SCHEMA, build_coach_system_prompt, build_coach_user_prompt
from .response_parser import SKIP_RESPONSE, CoachResponse, ResponseParser
from .trigger_detector import TriggerDetector, TriggerResult

logger = logging.getLogger(__name__)


INSTANT_MATCH_SCORE = 0.7
TOP_RECOMMENDATION_RATE = 0.4

Emit = Callable[[CoachEvent], Awaitable[None]]


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class CoachEngine:

    def __init__(
        self,
        completion,
        repository,
        store,
        matcher: Optional[ObjectionMatcher] = None,
        trigger_detector: Optional[TriggerDetector] = None,
        parser: Optional[ResponseParser] = None,
        clock: Callable[[], int] = _wall_clock_ms,
    ):
        self.completion = completion
        self.repository = repository
        self.store = store
        self.matcher = matcher or ObjectionMatcher()
        self.trigger_detector = trigger_detector or TriggerDetector()
        self.parser = parser or ResponseParser()
        self.clock = clock

    async def process(self, session: CallSession, text: str, role: ChannelRole, bundle, emit: Emit) -> List[CoachEvent]:
        """
        Run the pipeline for one accepted fragment. Never raises: a coaching
        failure must not take the realtime connection down.
        """
        emitted: List[CoachEvent] = []

        async def send(event: CoachEvent):
            emitted.append(event)
            await emit(event)

        try:
            alert = await self.instant_objection(session, text, bundle)
            if alert is not None:
                await send(alert)

            trigger = self.claim_trigger(session, text)
            if not trigger.should_trigger:
                return emitted

            print(f"[COACH] Call {session.call_id}: trigger {trigger.reason} (p{trigger.priority}) from {role.value}", flush=True)
            await self.store.save(session)

            response = await self.request_coaching(session, trigger, bundle)
            for event in await self.apply_response(session, response, trigger, bundle):
                await send(event)
        except Exception as e:
            logger.error(f"Coaching cycle failed for call {session.call_id}: {e}", exc_info=True)

        return emitted

    # ============ STEP 1: INSTANT ============

    async def instant_objection(self, session: CallSession, text: str, bundle) -> Optional[ObjectionAlert]:
        if bundle is None or not bundle.objections:
            return None

        match = self.matcher.match(text, bundle.objections)
        if match is None or match.score <= INSTANT_MATCH_SCORE:
            return None

        success_rate = None
        try:
            success_rate = await self.repository.get_objection_success_rate(match.objection_id, session.script_id)
        except Exception as e:
            # Side channel: no data is the same as no history
            logger.warning(f"Success-rate lookup failed for objection {match.objection_id}: {e}")

        top = success_rate is not None and success_rate > TOP_RECOMMENDATION_RATE

        if match.objection_id not in session.objections_seen:
            session.objections_seen.append(match.objection_id)

        return ObjectionAlert(
            objection_id=match.objection_id,
            trigger_phrase=match.trigger_phrase,
            content=match.suggested_response,
            score=match.score,
            urgency="high" if top else "medium",
            mental_trigger=match.mental_trigger,
            coaching_tip=match.coaching_tip,
            success_rate=success_rate,
            top_recommendation=top,
        )

    # ============ STEP 2: TRIGGER ============

    def claim_trigger(self, session: CallSession, text: str) -> TriggerResult:
        """Check and claim in one synchronous step (no await in between)"""
        now = self.clock()
        trigger = self.trigger_detector.evaluate(session.last_coaching_at, text, now)
        if trigger.should_trigger:
            session.last_coaching_at = now
        return trigger

    # ============ STEP 3: AI ============

    async def request_coaching(self, session: CallSession, trigger: TriggerResult, bundle) -> CoachResponse:
        if self.completion is None:
            return SKIP_RESPONSE
        system_prompt = build_coach_system_prompt(bundle.script)
        user_prompt = build_coach_user_prompt(session, trigger)
        raw = await self.completion.complete(system_prompt, user_prompt, COACH_RESPONSE_SCHEMA)
        return self.parser.parse(raw)

    # ============ STEP 4: EMISSION ============

    async def apply_response(self, session: CallSession, response: CoachResponse, trigger: TriggerResult, bundle) -> List[CoachEvent]:
        if response.should_skip:
            return []

        events: List[CoachEvent] = []
        changed = False

        if response.coaching is not None:
            events.append(CoachingTip(
                coaching_type=response.coaching.type,
                content=response.coaching.content,
                urgency=response.coaching.urgency,
                next_action=response.next_step.action if response.next_step else None,
                next_question=response.next_step.question if response.next_step else None,
                trigger_reason=trigger.reason,
            ))
            session.last_coaching = response.coaching.content
            changed = True

        if response.stage_changed and response.current_step != session.current_step:
            session.current_step = response.current_step
            script = bundle.script
            events.append(StageChange(
                step=response.current_step,
                step_name=script.stage_name(response.current_step),
                total_steps=len(script.steps),
            ))
            changed = True
            try:
                await self.repository.update_current_step(session.call_id, response.current_step)
            except Exception as e:
                logger.warning(f"Could not persist stage for call {session.call_id}: {e}")

        if response.lead_profile is not None:
            update = LeadProfileUpdate(
                profile_type=response.lead_profile.type,
                concerns=response.lead_profile.concerns,
                interests=response.lead_profile.interests,
                buying_signals=response.lead_profile.buying_signals,
            )
            if update.to_profile() != session.lead_profile:
                session.lead_profile = update.to_profile()
                events.append(update)
                changed = True

        if changed:
            await self.store.save(session)
        return events
