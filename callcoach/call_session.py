"""
CallCoach Call Session Store
Per-call conversational state, cached in the fabric and backed by the
durable call record.

Every mutation goes through SessionStore.save() so a process restart or a
dropped connection can pick the call back up.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .exceptions import CallSetupError

logger = logging.getLogger(__name__)


CHANNEL_CONTEXT_MAX_CHARS = 200
RESUME_WINDOW = timedelta(hours=1)


class ChannelRole(str, Enum):
    SELLER = "seller"
    COUNTERPART = "counterpart"

    @classmethod
    def parse(cls, value: Any) -> "ChannelRole":
        # The extension historically sent "lead" for tab audio
        if value in ("lead", "client", "tab"):
            return cls.COUNTERPART
        return cls(value)


class CallStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


@dataclass
class TranscriptEntry:
    text: str
    role: ChannelRole
    speaker: str
    timestamp: int
    is_final: bool = True

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "role": self.role.value,
            "speaker": self.speaker,
            "timestamp": self.timestamp,
            "is_final": self.is_final,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptEntry":
        return cls(
            text=data["text"],
            role=ChannelRole.parse(data.get("role") or data.get("speaker")),
            speaker=data.get("speaker") or "",
            timestamp=int(data.get("timestamp") or 0),
            is_final=bool(data.get("is_final", True)),
        )


@dataclass
class RecentFragment:
    """Entry of the dedup window"""
    text: str
    role: ChannelRole
    timestamp: int

    def to_dict(self) -> dict:
        return {"text": self.text, "role": self.role.value, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> "RecentFragment":
        return cls(text=data["text"], role=ChannelRole(data["role"]), timestamp=int(data["timestamp"]))


@dataclass
class CallSession:
    """Represents an in-progress call. Timestamps are epoch milliseconds."""
    call_id: str
    user_id: str
    script_id: str
    platform: str = "OTHER"
    external_id: Optional[str] = None

    transcript: List[TranscriptEntry] = field(default_factory=list)
    recent_fragments: List[RecentFragment] = field(default_factory=list)
    channel_context: Dict[str, str] = field(default_factory=dict)

    # Rate-limit timers, always advanced BEFORE the guarded call runs
    last_coaching_at: int = 0
    last_summary_at: int = 0

    current_step: int = 1
    lead_profile: Optional[dict] = None
    lead_name: Optional[str] = None
    last_coaching: Optional[str] = None
    objections_seen: List[str] = field(default_factory=list)
    started_at: int = 0

    def speaker_label(self, role: ChannelRole) -> str:
        if role is ChannelRole.SELLER:
            return "VENDEDOR"
        return self.lead_name or "LEAD"

    def append_transcript(self, text: str, role: ChannelRole, timestamp: int, is_final: bool = True) -> TranscriptEntry:
        entry = TranscriptEntry(
            text=text,
            role=role,
            speaker=self.speaker_label(role),
            timestamp=timestamp,
            is_final=is_final,
        )
        self.transcript.append(entry)
        self.channel_context[role.value] = text[-CHANNEL_CONTEXT_MAX_CHARS:]
        return entry

    def context_hint(self, role: ChannelRole) -> str:
        return self.channel_context.get(role.value, "")

    def recent_turns(self, limit: int) -> List[TranscriptEntry]:
        return self.transcript[-limit:] if limit else []

    def to_dict(self) -> dict:
        data = asdict(self)
        data["transcript"] = [entry.to_dict() for entry in self.transcript]
        data["recent_fragments"] = [fragment.to_dict() for fragment in self.recent_fragments]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CallSession":
        return cls(
            call_id=data["call_id"],
            user_id=data["user_id"],
            script_id=data["script_id"],
            platform=data.get("platform") or "OTHER",
            external_id=data.get("external_id"),
            transcript=[TranscriptEntry.from_dict(t) for t in data.get("transcript") or []],
            recent_fragments=[RecentFragment.from_dict(f) for f in data.get("recent_fragments") or []],
            channel_context=dict(data.get("channel_context") or {}),
            last_coaching_at=int(data.get("last_coaching_at") or 0),
            last_summary_at=int(data.get("last_summary_at") or 0),
            current_step=int(data.get("current_step") or 1),
            lead_profile=data.get("lead_profile"),
            lead_name=data.get("lead_name"),
            last_coaching=data.get("last_coaching"),
            objections_seen=list(data.get("objections_seen") or []),
            started_at=int(data.get("started_at") or 0),
        )


def session_key(call_id: str) -> str:
    return f"call:{call_id}"


def media_header_key(call_id: str) -> str:
    return f"call:{call_id}:media_header"


# ============ PUB/SUB CHANNELS (namespaced per call) ============

def transcript_channel(call_id: str) -> str:
    return f"call:{call_id}:transcript"


def media_channel(call_id: str) -> str:
    return f"call:{call_id}:media"


def summary_channel(call_id: str) -> str:
    return f"call:{call_id}:summary"


def commands_channel(call_id: str) -> str:
    return f"call:{call_id}:commands"


def _epoch_ms(value: Optional[datetime]) -> int:
    if value is None:
        return 0
    # Naive datetimes from the database are UTC
    return int((value - datetime(1970, 1, 1)).total_seconds() * 1000)


class SessionStore:
    """
    Single writer-of-record for CallSession.

    Cache writes are last-writer-wins; no transactional guarantee.
    """

    def __init__(self, fabric, repository, ttl_seconds: int = 4 * 3600, clock: Callable[[], int] = None):
        self.fabric = fabric
        self.repository = repository
        self.ttl_seconds = ttl_seconds
        self.clock = clock or (lambda: int(time.time() * 1000))

    # ============ CACHE ============

    async def save(self, session: CallSession):
        await self.fabric.set(session_key(session.call_id), session.to_dict(), self.ttl_seconds)

    async def load(self, call_id: str) -> Optional[CallSession]:
        """Cached session, or rehydrated from the durable record if the cache lost it"""
        data = await self.fabric.get(session_key(call_id))
        if data:
            return CallSession.from_dict(data)
        return await self.rehydrate(call_id)

    async def load_cached(self, call_id: str) -> Optional[CallSession]:
        data = await self.fabric.get(session_key(call_id))
        return CallSession.from_dict(data) if data else None

    async def delete(self, call_id: str):
        await self.fabric.delete(session_key(call_id))

    async def rehydrate(self, call_id: str, record=None) -> Optional[CallSession]:
        if record is None:
            record = await self.repository.get_call(call_id)
        if record is None or record.status != CallStatus.ACTIVE.value:
            return None

        session = CallSession(
            call_id=record.id,
            user_id=record.user_id,
            script_id=record.script_id,
            platform=record.platform,
            external_id=record.external_id,
            transcript=[TranscriptEntry.from_dict(t) for t in record.transcript or []],
            current_step=record.current_step or 1,
            lead_name=record.lead_name,
            started_at=_epoch_ms(record.started_at),
        )
        await self.save(session)
        logger.info(f"Rehydrated call {call_id} from durable record ({len(session.transcript)} turns)")
        return session

    # ============ LIFECYCLE ============

    async def start_call(
        self,
        user_id: str,
        script_id: str,
        platform: str = "OTHER",
        external_id: Optional[str] = None,
        lead_name: Optional[str] = None,
    ) -> CallSession:
        """
        Load-or-create, in priority order:
        1. same external correlation id (reactivated if it was closed)
        2. most recent active call of the user, within the hour, still cached
        3. brand new call record
        """
        session = None

        if external_id:
            record = await self.repository.find_call_by_external_id(user_id, external_id)
            if record is not None:
                if record.status != CallStatus.ACTIVE.value:
                    await self.repository.reactivate_call(record.id)
                    record.status = CallStatus.ACTIVE.value
                session = await self.load_cached(record.id) or await self.rehydrate(record.id, record)
                if session:
                    logger.info(f"Resuming call {record.id} by external id {external_id}")

        if session is None:
            since = datetime.utcnow() - RESUME_WINDOW
            record = await self.repository.find_recent_active_call(user_id, since)
            if record is not None:
                session = await self.load_cached(record.id)
                if session:
                    logger.info(f"Resuming recent active call {record.id}")

        if session is None:
            session = await self._create(user_id, script_id, platform, external_id, lead_name)

        # Name buffered before the session existed must survive
        if lead_name and session.lead_name != lead_name:
            session.lead_name = lead_name
            await self.repository.update_lead_name(session.call_id, lead_name)

        await self.save(session)
        return session

    async def _create(self, user_id, script_id, platform, external_id, lead_name) -> CallSession:
        profile = await self.repository.get_profile(user_id)
        if profile is None:
            raise CallSetupError("User profile not found")

        bundle = await self.repository.get_script_bundle(script_id)
        if bundle is None:
            raise CallSetupError("Script not found")

        record = await self.repository.create_call(
            user_id=user_id,
            organization_id=profile.organization_id,
            script_id=script_id,
            platform=platform,
            external_id=external_id,
            lead_name=lead_name,
        )
        if record is None:
            raise CallSetupError("Could not create call record")

        logger.info(f"Created call {record.id} for user {user_id} (script={script_id}, platform={platform})")
        return CallSession(
            call_id=record.id,
            user_id=user_id,
            script_id=script_id,
            platform=platform,
            external_id=external_id,
            lead_name=lead_name,
            started_at=self.clock(),
        )

    async def set_lead_name(self, session: CallSession, lead_name: str):
        session.lead_name = lead_name
        await self.save(session)
        await self.repository.update_lead_name(session.call_id, lead_name)

    async def finish_call(self, session: CallSession, analysis: Optional[dict] = None):
        """Terminal status + full transcript on the durable record, summary row, cache eviction"""
        transcript = [entry.to_dict() for entry in session.transcript]
        await self.repository.complete_call(session.call_id, transcript)

        if analysis:
            await self.repository.insert_call_summary(session.call_id, analysis)
            converted = analysis.get("result") == "CONVERTED"
            lost = analysis.get("result") == "LOST"
            if session.objections_seen and (converted or lost):
                await self.repository.record_objection_outcomes(
                    session.script_id, session.objections_seen, converted
                )

        await self.delete(session.call_id)
        logger.info(f"Call {session.call_id} finished ({len(transcript)} turns)")
