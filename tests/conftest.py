import json
from datetime import datetime
from typing import Dict, List, Optional

import pytest

from callcoach.call_session import CallSession, SessionStore
from callcoach.config import Settings
from callcoach.context import build_context
from callcoach.fabric import create_fabric
from callcoach.objection_matcher import Objection
from callcoach.repository import CallRecord, SalesScript, ScriptBundle, ScriptStage, UserProfile


START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-ms clock the tests move by hand"""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeRepository:
    """In-memory CallRepository"""

    def __init__(self):
        self.tokens = {"seller-token": "user-1", "manager-token": "manager-1"}
        self.profiles = {
            "user-1": UserProfile(user_id="user-1", organization_id="org-1", full_name="Ana"),
            "manager-1": UserProfile(user_id="manager-1", organization_id="org-1", role="MANAGER"),
        }
        self.bundles = {
            "script-1": ScriptBundle(
                script=SalesScript(
                    id="script-1",
                    name="Mentoria High Ticket",
                    steps=[
                        ScriptStage(1, "Abertura", "Rapport"),
                        ScriptStage(2, "Descoberta", "Dores"),
                        ScriptStage(3, "Fechamento", "Decisão"),
                    ],
                ),
                objections=[
                    Objection(
                        id="obj-price",
                        trigger_phrases=["está caro", "muito caro"],
                        suggested_response="Compare o investimento com o custo de continuar como está.",
                        mental_trigger="Custo da inação",
                        coaching_tip="Não dê desconto antes de ancorar valor.",
                    ),
                    Objection(
                        id="obj-spouse",
                        trigger_phrases=["falar com meu marido"],
                        suggested_response="Pergunte o que ele diria e responda junto.",
                    ),
                ],
            ),
        }
        self.calls: Dict[str, CallRecord] = {}
        self.summaries: List[tuple] = []
        self.outcomes: List[tuple] = []
        self.step_updates: List[tuple] = []
        self.success_rates: Dict[tuple, object] = {}
        self._seq = 0

    async def get_user_id_by_token(self, token):
        return self.tokens.get(token)

    async def get_profile(self, user_id):
        return self.profiles.get(user_id)

    async def find_call_by_external_id(self, user_id, external_id):
        for record in reversed(list(self.calls.values())):
            if record.user_id == user_id and record.external_id == external_id:
                return record
        return None

    async def find_recent_active_call(self, user_id, since):
        active = [
            r for r in self.calls.values()
            if r.user_id == user_id and r.status == "ACTIVE" and r.started_at >= since
        ]
        return max(active, key=lambda r: r.started_at) if active else None

    async def create_call(self, user_id, organization_id, script_id, platform, external_id, lead_name):
        self._seq += 1
        record = CallRecord(
            id=f"call-{self._seq}",
            user_id=user_id,
            script_id=script_id,
            platform=platform,
            external_id=external_id,
            lead_name=lead_name,
            started_at=datetime.utcnow(),
        )
        self.calls[record.id] = record
        return record

    async def reactivate_call(self, call_id):
        self.calls[call_id].status = "ACTIVE"

    async def get_call(self, call_id):
        return self.calls.get(call_id)

    async def update_lead_name(self, call_id, lead_name):
        self.calls[call_id].lead_name = lead_name

    async def update_current_step(self, call_id, step):
        self.step_updates.append((call_id, step))
        if call_id in self.calls:
            self.calls[call_id].current_step = step

    async def get_script_bundle(self, script_id):
        return self.bundles.get(script_id)

    async def complete_call(self, call_id, transcript):
        self.calls[call_id].status = "COMPLETED"
        self.calls[call_id].transcript = transcript

    async def insert_call_summary(self, call_id, analysis):
        self.summaries.append((call_id, analysis))

    async def get_objection_success_rate(self, objection_id, script_id):
        value = self.success_rates.get((objection_id, script_id))
        if isinstance(value, Exception):
            raise value
        return value

    async def record_objection_outcomes(self, script_id, objection_ids, converted):
        self.outcomes.append((script_id, list(objection_ids), converted))


class FakeCompletion:
    """Completion double: replies from a queue, records every prompt"""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: List[tuple] = []

    async def complete(self, system_prompt, user_prompt, schema_hint=None):
        self.calls.append((system_prompt, user_prompt, schema_hint))
        reply = self.replies.pop(0) if self.replies else '{"currentStep": 1, "shouldSkipResponse": true}'
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


class FakeTranscriber:
    """Audio bytes are utf-8 text in tests"""

    def __init__(self):
        self.hints: List[str] = []

    async def transcribe(self, audio: bytes, context_hint: str = "") -> str:
        self.hints.append(context_hint)
        return audio.decode("utf-8")


def coach_reply(content="Pergunte o que pesa mais na decisão.", **overrides) -> dict:
    reply = {
        "currentStep": 1,
        "coaching": {"type": "tip", "urgency": "medium", "content": content},
        "nextStep": None,
        "leadProfile": None,
        "stageChanged": False,
        "shouldSkipResponse": False,
    }
    reply.update(overrides)
    return reply


def make_session(**overrides) -> CallSession:
    data = dict(call_id="call-1", user_id="user-1", script_id="script-1", started_at=START_MS)
    data.update(overrides)
    return CallSession(**data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def fabric():
    return create_fabric("")


@pytest.fixture
def store(fabric, repository, clock):
    return SessionStore(fabric, repository, ttl_seconds=4 * 3600, clock=clock)


@pytest.fixture
def session():
    return make_session()


@pytest.fixture
def bundle(repository):
    return repository.bundles["script-1"]


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        anthropic_api_key="",
        deepgram_api_key="",
        redis_url="",
        database_url="",
    )


@pytest.fixture
def coach_completion():
    return FakeCompletion()


@pytest.fixture
def summary_completion():
    return FakeCompletion()


@pytest.fixture
def analysis_completion():
    return FakeCompletion()


@pytest.fixture
def app_context(test_settings, repository, fabric, clock, coach_completion, summary_completion, analysis_completion):
    return build_context(
        test_settings,
        repository=repository,
        transcriber=FakeTranscriber(),
        coach_completion=coach_completion,
        summary_completion=summary_completion,
        analysis_completion=analysis_completion,
        fabric=fabric,
        clock=clock,
    )
