"""
CallCoach application context.
Everything a connection needs, constructed once per process at startup and
handed to the websocket handlers explicitly (tests build it with doubles).
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Set

from .ai_client import create_analysis_completion, create_coach_completion, create_summary_completion
from .call_session import SessionStore
from .coach_engine import CoachEngine
from .config import Settings
from .database import configure_database, init_db
from .echo_filter import EchoFilter
from .fabric import DegradingFabric, create_fabric
from .post_call import PostCallAnalyzer
from .repository import SqlCallRepository
from .summary_agent import SUMMARY_INTERVAL_MS, SummaryAgent
from .transcriber import create_transcriber
from .trigger_detector import now_ms

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    fabric: DegradingFabric
    repository: Any
    store: SessionStore
    echo_filter: EchoFilter
    coach: CoachEngine
    summary: SummaryAgent
    post_call: PostCallAnalyzer
    transcriber: Optional[Any] = None
    media_header_ttl_seconds: int = 4 * 3600
    # How often each active call wakes its live summary
    summary_tick_seconds: float = SUMMARY_INTERVAL_MS / 1000
    clock: Callable[[], int] = now_ms
    call_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = field(
        default_factory=weakref.WeakValueDictionary
    )
    # Coaching / summary tasks outlive the connection that started them
    background: Set[asyncio.Task] = field(default_factory=set)

    def call_lock(self, call_id: str) -> asyncio.Lock:
        """One lock per call id, shared by every connection of this process"""
        lock = self.call_locks.get(call_id)
        if lock is None:
            lock = asyncio.Lock()
            self.call_locks[call_id] = lock
        return lock

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.background.add(task)
        task.add_done_callback(self.background.discard)
        return task

    async def wait_idle(self):
        """Wait for every background task, including ones spawned meanwhile"""
        while self.background:
            await asyncio.gather(*list(self.background), return_exceptions=True)

    async def close(self):
        await self.fabric.close()


def build_context(
    settings: Settings,
    repository=None,
    transcriber=None,
    coach_completion=None,
    summary_completion=None,
    analysis_completion=None,
    fabric: Optional[DegradingFabric] = None,
    clock=None,
) -> AppContext:
    """Wire the process context; any collaborator can be swapped for a double"""
    fabric = fabric or create_fabric(settings.redis_url)

    if repository is None:
        session_factory = configure_database(settings.database_dsn)
        if session_factory is None:
            raise RuntimeError("DATABASE_URL is required")
        init_db()
        repository = SqlCallRepository(session_factory)

    if transcriber is None and settings.deepgram_api_key:
        transcriber = create_transcriber()
    if settings.anthropic_api_key:
        coach_completion = coach_completion or create_coach_completion()
        summary_completion = summary_completion or create_summary_completion()
        analysis_completion = analysis_completion or create_analysis_completion()

    clock = clock or now_ms
    store = SessionStore(fabric, repository, ttl_seconds=settings.session_ttl_seconds, clock=clock)

    return AppContext(
        clock=clock,
        fabric=fabric,
        repository=repository,
        store=store,
        echo_filter=EchoFilter(),
        coach=CoachEngine(coach_completion, repository, store, clock=clock),
        summary=SummaryAgent(summary_completion, fabric, store, clock=clock),
        post_call=PostCallAnalyzer(analysis_completion),
        transcriber=transcriber,
        media_header_ttl_seconds=settings.media_header_ttl_seconds,
    )
