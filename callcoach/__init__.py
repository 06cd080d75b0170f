"""
CallCoach Application Package
"""

from .config import settings
from .fabric import DegradingFabric, MemoryFabric, RedisFabric, create_fabric
from .echo_filter import EchoFilter, DiscardReason
from .trigger_detector import TriggerDetector, TriggerResult
from .objection_matcher import Objection, ObjectionMatch, ObjectionMatcher
from .call_session import CallSession, ChannelRole, SessionStore, TranscriptEntry
from .coach_events import CoachingTip, ObjectionAlert, StageChange, LeadProfileUpdate
from .coach_engine import CoachEngine
from .summary_agent import SummaryAgent, LiveSummary
from .post_call import PostCallAnalyzer
from .repository import CallRepository, SqlCallRepository, ScriptBundle, SalesScript
from .context import AppContext, build_context

__all__ = [
    "settings",
    # Cache + pub/sub
    "DegradingFabric",
    "MemoryFabric",
    "RedisFabric",
    "create_fabric",
    # Transcript pipeline
    "EchoFilter",
    "DiscardReason",
    "TriggerDetector",
    "TriggerResult",
    "Objection",
    "ObjectionMatch",
    "ObjectionMatcher",
    # Call state
    "CallSession",
    "ChannelRole",
    "SessionStore",
    "TranscriptEntry",
    # Coaching
    "CoachingTip",
    "ObjectionAlert",
    "StageChange",
    "LeadProfileUpdate",
    "CoachEngine",
    "SummaryAgent",
    "LiveSummary",
    "PostCallAnalyzer",
    # Persistence
    "CallRepository",
    "SqlCallRepository",
    "ScriptBundle",
    "SalesScript",
    # Wiring
    "AppContext",
    "build_context",
]
