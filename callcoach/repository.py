"""
CallCoach Call Repository
Durable store for calls, scripts, objections, summaries and success metrics.

SqlCallRepository runs every blocking SQLAlchemy unit of work in the
default executor so the event loop never stalls on the database.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import database as models
from .database import session_scope, utcnow
from .objection_matcher import Objection

logger = logging.getLogger(__name__)


@dataclass
class UserProfile:
    user_id: str
    organization_id: Optional[str] = None
    full_name: Optional[str] = None
    role: str = "SELLER"


@dataclass
class CallRecord:
    id: str
    user_id: str
    script_id: str
    platform: str = "OTHER"
    status: str = "ACTIVE"
    external_id: Optional[str] = None
    lead_name: Optional[str] = None
    current_step: int = 1
    transcript: List[dict] = field(default_factory=list)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


@dataclass
class ScriptStage:
    step_order: int
    name: str
    description: str = ""
    key_questions: List[str] = field(default_factory=list)
    transition_criteria: str = ""
    estimated_duration: int = 60


# Used when a script has no stages of its own
DEFAULT_STAGES = [
    ScriptStage(1, "Abertura", "Criar rapport e apresentar a agenda da call"),
    ScriptStage(2, "Descoberta", "Entender situação, dores e objetivos do lead"),
    ScriptStage(3, "Apresentação", "Conectar a solução às dores levantadas"),
    ScriptStage(4, "Objeções", "Tratar dúvidas e resistências"),
    ScriptStage(5, "Fechamento", "Conduzir para a decisão e próximo passo"),
]


@dataclass
class SalesScript:
    id: str
    name: str
    coach_personality: Optional[str] = None
    coach_tone: Optional[str] = None
    intervention_level: Optional[str] = None
    steps: List[ScriptStage] = field(default_factory=list)

    def __post_init__(self):
        if not self.steps:
            self.steps = list(DEFAULT_STAGES)

    def stage_name(self, step: int) -> str:
        for stage in self.steps:
            if stage.step_order == step:
                return stage.name
        return f"Etapa {step}"

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.steps]


@dataclass
class ScriptBundle:
    """A script with its objection catalog"""
    script: SalesScript
    objections: List[Objection] = field(default_factory=list)


class CallRepository(Protocol):

    async def get_user_id_by_token(self, token: str) -> Optional[str]: ...

    async def get_profile(self, user_id: str) -> Optional[UserProfile]: ...

    async def find_call_by_external_id(self, user_id: str, external_id: str) -> Optional[CallRecord]: ...

    async def find_recent_active_call(self, user_id: str, since: datetime) -> Optional[CallRecord]: ...

    async def create_call(self, user_id: str, organization_id: Optional[str], script_id: str,
                          platform: str, external_id: Optional[str], lead_name: Optional[str]) -> CallRecord: ...

    async def reactivate_call(self, call_id: str) -> None: ...

    async def get_call(self, call_id: str) -> Optional[CallRecord]: ...

    async def update_lead_name(self, call_id: str, lead_name: str) -> None: ...

    async def update_current_step(self, call_id: str, step: int) -> None: ...

    async def get_script_bundle(self, script_id: str) -> Optional[ScriptBundle]: ...

    async def complete_call(self, call_id: str, transcript: List[dict]) -> None: ...

    async def insert_call_summary(self, call_id: str, analysis: Dict[str, Any]) -> None: ...

    async def get_objection_success_rate(self, objection_id: str, script_id: str) -> Optional[float]: ...

    async def record_objection_outcomes(self, script_id: str, objection_ids: List[str], converted: bool) -> None: ...


def _loads(value: Optional[str], default):
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        logger.warning(f"Ignoring malformed JSON column value: {value[:80]!r}")
        return default


def _to_record(call: models.Call) -> CallRecord:
    return CallRecord(
        id=call.id,
        user_id=call.user_id,
        script_id=call.script_id,
        platform=call.platform or "OTHER",
        status=call.status,
        external_id=call.external_id,
        lead_name=call.lead_name,
        current_step=call.current_step or 1,
        transcript=_loads(call.transcript_json, []),
        started_at=call.started_at,
        ended_at=call.ended_at,
    )


class SqlCallRepository:
    """CallRepository over SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def _run(self, fn: Callable[[Session], Any]) -> Any:
        def work():
            with session_scope(self.session_factory) as db:
                return fn(db)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, work)

    # ============ USERS ============

    async def get_user_id_by_token(self, token: str) -> Optional[str]:
        def query(db: Session):
            user = db.query(models.User).filter(models.User.api_token == token).first()
            return user.id if user else None
        return await self._run(query)

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        def query(db: Session):
            profile = db.query(models.Profile).filter(models.Profile.id == user_id).first()
            if profile is None:
                return None
            return UserProfile(
                user_id=profile.id,
                organization_id=profile.organization_id,
                full_name=profile.full_name,
                role=profile.role or "SELLER",
            )
        return await self._run(query)

    # ============ CALLS ============

    async def find_call_by_external_id(self, user_id: str, external_id: str) -> Optional[CallRecord]:
        def query(db: Session):
            call = (
                db.query(models.Call)
                .filter(models.Call.user_id == user_id, models.Call.external_id == external_id)
                .order_by(models.Call.started_at.desc())
                .first()
            )
            return _to_record(call) if call else None
        return await self._run(query)

    async def find_recent_active_call(self, user_id: str, since: datetime) -> Optional[CallRecord]:
        def query(db: Session):
            call = (
                db.query(models.Call)
                .filter(
                    models.Call.user_id == user_id,
                    models.Call.status == "ACTIVE",
                    models.Call.started_at >= since,
                )
                .order_by(models.Call.started_at.desc())
                .first()
            )
            return _to_record(call) if call else None
        return await self._run(query)

    async def create_call(self, user_id, organization_id, script_id, platform, external_id, lead_name) -> CallRecord:
        def insert(db: Session):
            call = models.Call(
                user_id=user_id,
                organization_id=organization_id,
                script_id=script_id,
                platform=platform or "OTHER",
                external_id=external_id,
                lead_name=lead_name,
                status="ACTIVE",
                started_at=utcnow(),
            )
            db.add(call)
            db.flush()
            return _to_record(call)
        return await self._run(insert)

    async def reactivate_call(self, call_id: str) -> None:
        def update(db: Session):
            db.query(models.Call).filter(models.Call.id == call_id).update(
                {"status": "ACTIVE", "ended_at": None}
            )
        await self._run(update)

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        def query(db: Session):
            call = db.query(models.Call).filter(models.Call.id == call_id).first()
            return _to_record(call) if call else None
        return await self._run(query)

    async def update_lead_name(self, call_id: str, lead_name: str) -> None:
        def update(db: Session):
            db.query(models.Call).filter(models.Call.id == call_id).update({"lead_name": lead_name})
        await self._run(update)

    async def update_current_step(self, call_id: str, step: int) -> None:
        def update(db: Session):
            db.query(models.Call).filter(models.Call.id == call_id).update({"current_step": step})
        await self._run(update)

    async def complete_call(self, call_id: str, transcript: List[dict]) -> None:
        def update(db: Session):
            db.query(models.Call).filter(models.Call.id == call_id).update({
                "status": "COMPLETED",
                "ended_at": utcnow(),
                "transcript_json": json.dumps(transcript, ensure_ascii=False),
            })
        await self._run(update)

    async def insert_call_summary(self, call_id: str, analysis: Dict[str, Any]) -> None:
        def insert(db: Session):
            score = analysis.get("script_adherence_score")
            db.add(models.CallSummary(
                call_id=call_id,
                script_adherence_score=float(score) if isinstance(score, (int, float)) else None,
                strengths_json=json.dumps(analysis.get("strengths") or [], ensure_ascii=False),
                improvements_json=json.dumps(analysis.get("improvements") or [], ensure_ascii=False),
                objections_faced_json=json.dumps(analysis.get("objections_faced") or [], ensure_ascii=False),
                buying_signals_json=json.dumps(analysis.get("buying_signals") or [], ensure_ascii=False),
                lead_sentiment=analysis.get("lead_sentiment"),
                result=analysis.get("result"),
                ai_notes=analysis.get("ai_notes"),
            ))
        await self._run(insert)

    # ============ SCRIPTS ============

    async def get_script_bundle(self, script_id: str) -> Optional[ScriptBundle]:
        def query(db: Session):
            script = db.query(models.Script).filter(models.Script.id == script_id).first()
            if script is None:
                return None

            steps = (
                db.query(models.ScriptStep)
                .filter(models.ScriptStep.script_id == script_id)
                .order_by(models.ScriptStep.step_order)
                .all()
            )
            objections = db.query(models.Objection).filter(models.Objection.script_id == script_id).all()

            return ScriptBundle(
                script=SalesScript(
                    id=script.id,
                    name=script.name,
                    coach_personality=script.coach_personality,
                    coach_tone=script.coach_tone,
                    intervention_level=script.intervention_level,
                    steps=[
                        ScriptStage(
                            step_order=step.step_order,
                            name=step.name,
                            description=step.description or "",
                            key_questions=_loads(step.key_questions_json, []),
                            transition_criteria=step.transition_criteria or "",
                            estimated_duration=step.estimated_duration or 60,
                        )
                        for step in steps
                    ],
                ),
                objections=[
                    Objection(
                        id=o.id,
                        trigger_phrases=_loads(o.trigger_phrases_json, []),
                        suggested_response=o.suggested_response or "",
                        mental_trigger=o.mental_trigger or "",
                        coaching_tip=o.coaching_tip or "",
                    )
                    for o in objections
                ],
            )
        return await self._run(query)

    # ============ OBJECTION METRICS ============

    async def get_objection_success_rate(self, objection_id: str, script_id: str) -> Optional[float]:
        def query(db: Session):
            metric = (
                db.query(models.ObjectionSuccessMetric)
                .filter(
                    models.ObjectionSuccessMetric.objection_id == objection_id,
                    models.ObjectionSuccessMetric.script_id == script_id,
                )
                .first()
            )
            return metric.success_rate if metric else None
        return await self._run(query)

    async def record_objection_outcomes(self, script_id: str, objection_ids: List[str], converted: bool) -> None:
        def upsert(db: Session):
            for objection_id in dict.fromkeys(objection_ids):
                metric = (
                    db.query(models.ObjectionSuccessMetric)
                    .filter(
                        models.ObjectionSuccessMetric.objection_id == objection_id,
                        models.ObjectionSuccessMetric.script_id == script_id,
                    )
                    .first()
                )
                if metric is None:
                    metric = models.ObjectionSuccessMetric(
                        objection_id=objection_id,
                        script_id=script_id,
                        usage_count=0,
                        converted_count=0,
                        lost_count=0,
                    )
                    db.add(metric)
                metric.usage_count += 1
                if converted:
                    metric.converted_count += 1
                else:
                    metric.lost_count += 1
        try:
            await self._run(upsert)
        except SQLAlchemyError as e:
            # Metrics are a side channel, never fail the call end over them
            logger.error(f"Failed to record objection outcomes for script {script_id}: {e}")
