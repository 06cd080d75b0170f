import pytest

from callcoach.call_session import ChannelRole, summary_channel
from callcoach.exceptions import CompletionError
from callcoach.summary_agent import SUMMARY_INTERVAL_MS, SummaryAgent

from .conftest import FakeCompletion

SUMMARY = {
    "status": "Descoberta de Dores",
    "summary_points": ["Lead sem tempo para prospectar", "Já testou agência", "Quer resultado em 90 dias"],
    "sentiment": "Positive",
    "spin_phase": "Problem",
}


@pytest.fixture
def live_session(session, clock):
    session.append_transcript("Hoje eu não tenho tempo de prospectar", ChannelRole.COUNTERPART, clock.now)
    return session


@pytest.fixture
def published(fabric, live_session):
    received = []

    async def collect():
        await fabric.subscribe(summary_channel(live_session.call_id), received.append)
        return received

    return collect


class TestSummaryAgent:
    @pytest.mark.asyncio
    async def test_publishes_to_call_summary_channel(self, fabric, store, clock, live_session, published):
        received = await published()
        completion = FakeCompletion(SUMMARY)
        agent = SummaryAgent(completion, fabric, store, clock=clock)

        summary = await agent.maybe_summarize(live_session)

        assert summary.status == "Descoberta de Dores"
        assert received == [{"callId": "call-1", "timestamp": clock.now, **SUMMARY}]
        assert "Hoje eu não tenho tempo de prospectar" in completion.calls[0][1]

    @pytest.mark.asyncio
    async def test_at_most_once_per_interval(self, fabric, store, clock, live_session, published):
        received = await published()
        completion = FakeCompletion(SUMMARY, SUMMARY)
        agent = SummaryAgent(completion, fabric, store, clock=clock)

        await agent.maybe_summarize(live_session)
        clock.advance(SUMMARY_INTERVAL_MS - 1)
        assert await agent.maybe_summarize(live_session) is None
        clock.advance(1)
        assert await agent.maybe_summarize(live_session) is not None

        assert len(completion.calls) == 2
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_failure_keeps_timestamp_advanced(self, fabric, store, clock, live_session, published):
        received = await published()
        completion = FakeCompletion(CompletionError("timeout"))
        agent = SummaryAgent(completion, fabric, store, clock=clock)

        assert await agent.maybe_summarize(live_session) is None

        assert live_session.last_summary_at == clock.now
        assert (await store.load_cached("call-1")).last_summary_at == clock.now
        assert received == []
        clock.advance(1000)
        assert await agent.maybe_summarize(live_session) is None
        assert len(completion.calls) == 1

    @pytest.mark.asyncio
    async def test_unparseable_reply_publishes_nothing(self, fabric, store, clock, live_session, published):
        received = await published()
        agent = SummaryAgent(FakeCompletion("sem resumo"), fabric, store, clock=clock)

        assert await agent.maybe_summarize(live_session) is None
        assert received == []

    @pytest.mark.asyncio
    async def test_keeps_top_three_points(self, fabric, store, clock, live_session):
        reply = dict(SUMMARY, summary_points=["a", "b", "c", "d", "e"])
        agent = SummaryAgent(FakeCompletion(reply), fabric, store, clock=clock)

        summary = await agent.maybe_summarize(live_session)

        assert summary.summary_points == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_empty_transcript_is_skipped(self, fabric, store, clock, session):
        completion = FakeCompletion(SUMMARY)
        agent = SummaryAgent(completion, fabric, store, clock=clock)

        assert await agent.maybe_summarize(session) is None
        assert completion.calls == []
        assert session.last_summary_at == 0

    @pytest.mark.asyncio
    async def test_disabled_without_completion(self, fabric, store, clock, live_session):
        agent = SummaryAgent(None, fabric, store, clock=clock)
        assert await agent.maybe_summarize(live_session) is None
        assert live_session.last_summary_at == 0
