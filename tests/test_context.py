import asyncio

import pytest


class TestAppContext:
    @pytest.mark.asyncio
    async def test_one_lock_per_call(self, app_context):
        lock = app_context.call_lock("call-1")
        assert app_context.call_lock("call-1") is lock
        assert app_context.call_lock("call-2") is not lock

    @pytest.mark.asyncio
    async def test_background_tasks_are_tracked_until_done(self, app_context):
        release = asyncio.Event()
        finished = []

        async def job():
            await release.wait()
            finished.append(True)

        task = app_context.spawn(job())
        assert task in app_context.background

        release.set()
        await app_context.wait_idle()

        assert finished == [True]
        assert app_context.background == set()

    @pytest.mark.asyncio
    async def test_wait_idle_survives_failing_task(self, app_context):
        async def boom():
            raise RuntimeError("boom")

        app_context.spawn(boom())
        await app_context.wait_idle()
        assert app_context.background == set()

    def test_doubles_are_wired(self, app_context, coach_completion, repository, clock):
        assert app_context.coach.completion is coach_completion
        assert app_context.store.repository is repository
        assert app_context.clock is clock
        assert app_context.summary.clock is clock
