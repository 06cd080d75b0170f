import pytest

from callcoach.call_session import CallSession, ChannelRole, RecentFragment, session_key
from callcoach.exceptions import CallSetupError

from .conftest import START_MS, make_session

LEAD = ChannelRole.COUNTERPART
SELLER = ChannelRole.SELLER


async def existing_call(repository, **overrides):
    record = await repository.create_call("user-1", "org-1", "script-1", "GOOGLE_MEET", overrides.pop("external_id", None), None)
    for name, value in overrides.items():
        setattr(record, name, value)
    return record


class TestCallSession:
    def test_parse_role_aliases(self):
        assert ChannelRole.parse("lead") is LEAD
        assert ChannelRole.parse("tab") is LEAD
        assert ChannelRole.parse("seller") is SELLER
        with pytest.raises(ValueError):
            ChannelRole.parse("manager")

    def test_append_labels_speakers(self):
        session = make_session(lead_name="Carla")
        session.append_transcript("Oi Carla", SELLER, START_MS)
        session.append_transcript("Oi!", LEAD, START_MS + 500)
        assert [e.speaker for e in session.transcript] == ["VENDEDOR", "Carla"]

    def test_channel_context_keeps_tail(self):
        session = make_session()
        session.append_transcript("a" * 150 + "b" * 100, LEAD, START_MS)
        assert session.context_hint(LEAD) == "a" * 100 + "b" * 100
        assert session.context_hint(SELLER) == ""

    def test_serialized_shape_survives_cache(self):
        session = make_session(lead_name="Carla", current_step=3, objections_seen=["obj-price"])
        session.append_transcript("Tá caro", LEAD, START_MS)
        session.recent_fragments.append(RecentFragment("Tá caro", LEAD, START_MS))
        session.lead_profile = {"type": "rational", "concerns": [], "interests": [], "buyingSignals": []}

        data = session.to_dict()
        assert data["transcript"][0] == {
            "text": "Tá caro", "role": "counterpart", "speaker": "Carla", "timestamp": START_MS, "is_final": True,
        }
        assert CallSession.from_dict(data) == session


class TestStartCall:
    @pytest.mark.asyncio
    async def test_new_call(self, store, repository, fabric):
        session = await store.start_call("user-1", "script-1", platform="ZOOM", external_id="zoom-42")

        assert session.call_id == "call-1"
        assert session.platform == "ZOOM"
        assert session.last_coaching_at == 0
        assert session.current_step == 1
        assert repository.calls["call-1"].external_id == "zoom-42"
        assert await fabric.get(session_key("call-1")) == session.to_dict()

    @pytest.mark.asyncio
    async def test_external_id_reactivates_closed_call(self, store, repository):
        record = await existing_call(
            repository,
            external_id="meet-abc",
            status="COMPLETED",
            current_step=2,
            transcript=[{"text": "Bom dia", "role": "seller", "speaker": "VENDEDOR", "timestamp": START_MS}],
        )

        session = await store.start_call("user-1", "script-1", external_id="meet-abc")

        assert session.call_id == record.id
        assert repository.calls[record.id].status == "ACTIVE"
        assert session.current_step == 2
        assert [e.text for e in session.transcript] == ["Bom dia"]

    @pytest.mark.asyncio
    async def test_external_id_prefers_cached_state(self, store, repository, clock):
        record = await existing_call(repository, external_id="meet-abc")
        cached = make_session(call_id=record.id, last_coaching_at=clock.now - 1000)
        cached.append_transcript("Já tenho uma agência", LEAD, clock.now - 2000)
        await store.save(cached)

        session = await store.start_call("user-1", "script-1", external_id="meet-abc")

        assert session.last_coaching_at == clock.now - 1000
        assert [e.text for e in session.transcript] == ["Já tenho uma agência"]

    @pytest.mark.asyncio
    async def test_resumes_recent_cached_call(self, store, repository, clock):
        record = await existing_call(repository)
        await store.save(make_session(call_id=record.id, current_step=4))

        session = await store.start_call("user-1", "script-1")

        assert session.call_id == record.id
        assert session.current_step == 4
        assert len(repository.calls) == 1

    @pytest.mark.asyncio
    async def test_recent_call_without_cache_starts_fresh(self, store, repository):
        record = await existing_call(repository)

        session = await store.start_call("user-1", "script-1")

        assert session.call_id != record.id
        assert len(repository.calls) == 2

    @pytest.mark.asyncio
    async def test_missing_profile(self, store):
        with pytest.raises(CallSetupError, match="profile"):
            await store.start_call("ghost", "script-1")

    @pytest.mark.asyncio
    async def test_missing_script(self, store, repository):
        with pytest.raises(CallSetupError) as exc_info:
            await store.start_call("user-1", "no-such-script")
        assert exc_info.value.to_event() == {
            "type": "error",
            "payload": {"message": "Script not found", "code": "CALL_SETUP_FAILED"},
        }
        assert repository.calls == {}

    @pytest.mark.asyncio
    async def test_buffered_lead_name_applied_on_resume(self, store, repository):
        record = await existing_call(repository)
        await store.save(make_session(call_id=record.id))

        session = await store.start_call("user-1", "script-1", lead_name="Carla")

        assert session.lead_name == "Carla"
        assert repository.calls[record.id].lead_name == "Carla"
        assert (await store.load_cached(record.id)).lead_name == "Carla"


class TestLoadAndFinish:
    @pytest.mark.asyncio
    async def test_load_rehydrates_lost_cache(self, store, repository, fabric):
        record = await existing_call(repository, lead_name="Carla")

        session = await store.load(record.id)

        assert session.lead_name == "Carla"
        assert await fabric.get(session_key(record.id)) is not None

    @pytest.mark.asyncio
    async def test_completed_call_is_not_rehydrated(self, store, repository):
        record = await existing_call(repository, status="COMPLETED")
        assert await store.load(record.id) is None
        assert await store.load("unknown") is None

    @pytest.mark.asyncio
    async def test_finish_records_outcome_and_evicts(self, store, repository, fabric):
        session = await store.start_call("user-1", "script-1")
        session.objections_seen = ["obj-price", "obj-spouse"]
        session.append_transcript("Fechado!", LEAD, START_MS)

        await store.finish_call(session, {"result": "CONVERTED", "strengths": []})

        record = repository.calls[session.call_id]
        assert record.status == "COMPLETED"
        assert record.transcript[0]["text"] == "Fechado!"
        assert repository.summaries == [(session.call_id, {"result": "CONVERTED", "strengths": []})]
        assert repository.outcomes == [("script-1", ["obj-price", "obj-spouse"], True)]
        assert await fabric.get(session_key(session.call_id)) is None

    @pytest.mark.asyncio
    async def test_follow_up_does_not_touch_metrics(self, store, repository):
        session = await store.start_call("user-1", "script-1")
        session.objections_seen = ["obj-price"]

        await store.finish_call(session, {"result": "FOLLOW_UP"})

        assert repository.outcomes == []

    @pytest.mark.asyncio
    async def test_finish_without_analysis(self, store, repository):
        session = await store.start_call("user-1", "script-1")
        session.objections_seen = ["obj-price"]

        await store.finish_call(session, {})

        assert repository.summaries == []
        assert repository.outcomes == []
        assert repository.calls[session.call_id].status == "COMPLETED"
