"""
CallCoach WebSocket Handler
Seller (/ws/call) and manager (/ws/manager) endpoints.

Seller: call lifecycle, audio segments -> transcript -> coaching, media relay,
        manager whispers relayed from the call's commands channel.
Manager: joins a call's transcript / media / live-summary channels and
         whispers back to the seller.

Connection state lives on an explicit per-connection object. Audio of each
channel role goes through its own ordered worker; the dedup window of a call
is serialized by the per-call lock.
Each active call also runs a summary timer next to the transcript pipeline.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .auth import authenticate_websocket
from .call_session import (
    CallSession, ChannelRole, TranscriptEntry,
    commands_channel, media_channel, media_header_key, summary_channel, transcript_channel,
)
from .coach_events import CoachEvent
from .context import AppContext
from .exceptions import CallSetupError, TranscriptionError
from .schemas import (
    AudioSegmentPayload, CallStartPayload, Envelope, ManagerJoinPayload, ManagerWhisperPayload,
    MediaStreamPayload, ParticipantsPayload,
)

logger = logging.getLogger(__name__)


async def safe_send(websocket: WebSocket, message_type: str, payload: Any = None) -> bool:
    """Send an envelope; a dead socket is logged, never raised"""
    try:
        await websocket.send_json({"type": message_type, "payload": payload if payload is not None else {}})
        return True
    except Exception as e:
        logger.debug(f"Send of {message_type} failed: {e}")
        return False


async def safe_publish(ctx: AppContext, channel: str, message: dict):
    try:
        await ctx.fabric.publish(channel, message)
    except Exception as e:
        logger.error(f"Publish to {channel} failed: {e}")


# ============ SELLER ============

class SellerConnection:
    """State of one seller socket (one active call at a time)"""

    def __init__(self, websocket: WebSocket, user_id: str, ctx: AppContext):
        self.websocket = websocket
        self.user_id = user_id
        self.ctx = ctx

        self.session: Optional[CallSession] = None
        self.bundle = None
        self.lock: Optional[asyncio.Lock] = None
        self.pending_lead_name: Optional[str] = None

        self.queues: Dict[ChannelRole, asyncio.Queue] = {}
        self.workers: Dict[ChannelRole, asyncio.Task] = {}
        self._commands_handler: Optional[Callable[[dict], Awaitable[None]]] = None
        self._commands_channel: Optional[str] = None

        # Coaching and summary tasks started by this call, awaited on call:end
        self.tasks: Set[asyncio.Task] = set()
        self.summary_timer: Optional[asyncio.Task] = None

    async def send(self, message_type: str, payload: Any = None) -> bool:
        return await safe_send(self.websocket, message_type, payload)

    async def handle(self, envelope: Envelope):
        handlers = {
            "call:start": self.on_call_start,
            "audio:segment": self.on_audio_segment,
            "transcript:chunk": self.on_transcript_chunk,
            "call:participants": self.on_participants,
            "call:end": self.on_call_end,
            "media:stream": self.on_media_stream,
        }
        handler = handlers.get(envelope.type)
        if handler is None:
            logger.debug(f"[WS] Ignoring unknown seller message {envelope.type}")
            return
        await handler(envelope.payload)

    # ============ LIFECYCLE ============

    async def on_call_start(self, payload: dict):
        data = CallStartPayload.model_validate(payload)

        if self.session is not None:
            await self.send("call:started", {"callId": self.session.call_id})
            return

        # An explicit leadName wins over one buffered from call:participants
        lead_name = data.lead_name or self.pending_lead_name
        session = await self.ctx.store.start_call(
            user_id=self.user_id,
            script_id=data.script_id,
            platform=data.platform,
            external_id=data.external_id,
            lead_name=lead_name,
        )

        bundle = await self.ctx.repository.get_script_bundle(session.script_id)
        if bundle is None:
            raise CallSetupError("Script not found")

        self.pending_lead_name = None
        self.session = session
        self.bundle = bundle
        self.lock = self.ctx.call_lock(session.call_id)

        await self._subscribe_commands(session.call_id)
        self._start_workers()
        self.summary_timer = asyncio.create_task(self._summary_loop(session))

        print(f"[WS] Call {session.call_id} started for user {self.user_id}", flush=True)
        await self.send("call:started", {"callId": session.call_id})

    async def on_participants(self, payload: dict):
        data = ParticipantsPayload.model_validate(payload)
        if not data.lead_name:
            return
        if self.session is None:
            self.pending_lead_name = data.lead_name
            return
        async with self.lock:
            await self.ctx.store.set_lead_name(self.session, data.lead_name)

    async def on_call_end(self, payload: dict):
        session = self.session
        if session is None:
            return

        await self._drain()
        await self._stop_summary_timer()
        await self._settle()

        analysis = await self.ctx.post_call.generate(session, self.bundle.script)
        await self.send("call:summary", analysis)
        await self.ctx.store.finish_call(session, analysis)

        await self.detach()
        print(f"[WS] Call {session.call_id} ended", flush=True)

    # ============ TRANSCRIPT PIPELINE ============

    async def on_audio_segment(self, payload: dict):
        data = AudioSegmentPayload.model_validate(payload)
        if self.session is None:
            return
        audio = data.decode()
        if audio:
            self._enqueue(ChannelRole.parse(data.role), audio)

    async def on_transcript_chunk(self, payload: dict):
        """Text already transcribed on the client, same pipeline minus the transcriber"""
        if self.session is None or not payload.get("text"):
            return
        role = ChannelRole.parse(payload.get("role") or payload.get("speaker") or "seller")
        self._enqueue(role, str(payload["text"]))

    def _enqueue(self, role: ChannelRole, item: Union[bytes, str]):
        self.queues[role].put_nowait(item)

    def _start_workers(self):
        for role in ChannelRole:
            self.queues[role] = asyncio.Queue()
            self.workers[role] = asyncio.create_task(self._worker(role))

    async def _worker(self, role: ChannelRole):
        queue = self.queues[role]
        while True:
            item = await queue.get()
            try:
                await self.process_segment(role, item)
            except Exception as e:
                logger.error(f"[WS] Segment processing failed ({role.value}): {e}", exc_info=True)
            finally:
                queue.task_done()

    async def _drain(self):
        for queue in self.queues.values():
            await queue.join()

    def _spawn(self, coro) -> asyncio.Task:
        task = self.ctx.spawn(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def _settle(self):
        """Wait for this call's in-flight coaching and summaries"""
        while self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)

    async def _summary_loop(self, session: CallSession):
        while True:
            await asyncio.sleep(self.ctx.summary_tick_seconds)
            # Stopping the timer must not cancel a summary mid-flight
            self._spawn(self.ctx.summary.maybe_summarize(session))

    async def _stop_summary_timer(self):
        timer, self.summary_timer = self.summary_timer, None
        if timer is None:
            return
        timer.cancel()
        await asyncio.gather(timer, return_exceptions=True)

    async def process_segment(self, role: ChannelRole, item: Union[bytes, str]):
        session = self.session
        if session is None:
            return

        if isinstance(item, bytes):
            if self.ctx.transcriber is None:
                logger.warning("DEEPGRAM_API_KEY not set - dropping audio segment")
                return
            try:
                text = await self.ctx.transcriber.transcribe(item, session.context_hint(role))
            except TranscriptionError as e:
                logger.warning(f"[WS] {e.message}")
                return
        else:
            text = item.strip()

        if not text:
            return

        entry = await self.accept_fragment(session, role, text)
        if entry is None:
            return

        await self.send("transcript:chunk", {
            "text": entry.text,
            "isFinal": entry.is_final,
            "speaker": entry.speaker,
            "role": entry.role.value,
        })
        await safe_publish(self.ctx, transcript_channel(session.call_id), {
            "callId": session.call_id,
            **entry.to_dict(),
        })

        self._spawn(self.ctx.coach.process(session, entry.text, entry.role, self.bundle, self.emit_coaching))

    async def accept_fragment(self, session: CallSession, role: ChannelRole, text: str) -> Optional[TranscriptEntry]:
        """Dedup + append + persist, serialized per call"""
        async with self.lock:
            now = self.ctx.clock()
            reason = self.ctx.echo_filter.check(text, role, session, now)
            if reason is not None:
                logger.debug(f"[WS] Discarded {role.value} fragment ({reason.value}): {text[:60]!r}")
                return None
            entry = session.append_transcript(text, role, now)
            try:
                await self.ctx.store.save(session)
            except Exception as e:
                logger.error(f"[WS] Session save failed for call {session.call_id}: {e}")
            return entry

    async def emit_coaching(self, event: CoachEvent):
        await self.send("COACHING_MESSAGE", event.to_payload())

    # ============ MEDIA ============

    async def on_media_stream(self, payload: dict):
        session = self.session
        if session is None:
            return
        media = MediaStreamPayload.model_validate(payload).to_wire()
        media["callId"] = session.call_id

        if media["isHeader"]:
            try:
                await self.ctx.fabric.set(media_header_key(session.call_id), media, self.ctx.media_header_ttl_seconds)
            except Exception as e:
                logger.error(f"[WS] Could not cache media header for call {session.call_id}: {e}")

        await safe_publish(self.ctx, media_channel(session.call_id), media)

    # ============ WHISPERS ============

    async def _subscribe_commands(self, call_id: str):
        async def on_command(message: dict):
            if message.get("type") != "whisper":
                return
            await self.send("coach:whisper", {
                "source": "manager",
                "content": message.get("content"),
                "urgency": message.get("urgency", "medium"),
                "timestamp": message.get("timestamp"),
            })

        channel = commands_channel(call_id)
        self._commands_handler = on_command
        self._commands_channel = channel
        try:
            await self.ctx.fabric.subscribe(channel, on_command)
        except Exception as e:
            logger.error(f"[WS] Subscribe to {channel} failed: {e}")

    async def detach(self):
        """Unsubscribe and stop workers. In-flight coaching keeps running."""
        await self._stop_summary_timer()

        if self._commands_channel and self._commands_handler:
            try:
                await self.ctx.fabric.unsubscribe(self._commands_channel, self._commands_handler)
            except Exception as e:
                logger.error(f"[WS] Unsubscribe from {self._commands_channel} failed: {e}")
        self._commands_channel = None
        self._commands_handler = None

        for task in self.workers.values():
            task.cancel()
        self.workers.clear()
        self.queues.clear()

        self.session = None
        self.bundle = None


# ============ MANAGER ============

class ManagerConnection:
    """State of one manager socket (watches one call at a time)"""

    def __init__(self, websocket: WebSocket, user_id: str, ctx: AppContext):
        self.websocket = websocket
        self.user_id = user_id
        self.ctx = ctx
        self.call_id: Optional[str] = None
        self.subscriptions: Dict[str, Callable[[dict], Awaitable[None]]] = {}

    async def send(self, message_type: str, payload: Any = None) -> bool:
        return await safe_send(self.websocket, message_type, payload)

    async def handle(self, envelope: Envelope):
        if envelope.type == "manager:join":
            await self.on_join(envelope.payload)
        elif envelope.type == "manager:whisper":
            await self.on_whisper(envelope.payload)
        else:
            logger.debug(f"[WS] Ignoring unknown manager message {envelope.type}")

    def _relay(self, message_type: str):
        async def relay(message: dict):
            await self.send(message_type, message)
        return relay

    async def on_join(self, payload: dict):
        data = ManagerJoinPayload.model_validate(payload)
        await self.leave()

        self.call_id = data.call_id
        wanted = {
            transcript_channel(data.call_id): self._relay("transcript:stream"),
            media_channel(data.call_id): self._relay("media:chunk"),
            summary_channel(data.call_id): self._relay("call:live_summary"),
        }
        for channel, handler in wanted.items():
            try:
                await self.ctx.fabric.subscribe(channel, handler)
                self.subscriptions[channel] = handler
            except Exception as e:
                logger.error(f"[WS] Manager subscribe to {channel} failed: {e}")

        await self.send("manager:joined", {"callId": data.call_id})

        try:
            header = await self.ctx.fabric.get(media_header_key(data.call_id))
        except Exception as e:
            logger.error(f"[WS] Media header lookup failed for call {data.call_id}: {e}")
            header = None
        if header:
            await self.send("media:chunk", header)

        print(f"[WS] Manager {self.user_id} joined call {data.call_id}", flush=True)

    async def on_whisper(self, payload: dict):
        if self.call_id is None:
            await self.send("error", {"message": "Join a call before whispering"})
            return
        data = ManagerWhisperPayload.model_validate(payload)
        await safe_publish(self.ctx, commands_channel(self.call_id), {
            "type": "whisper",
            "content": data.content,
            "urgency": data.urgency,
            "timestamp": self.ctx.clock(),
            "managerId": self.user_id,
        })
        await self.send("whisper:sent", {"callId": self.call_id})

    async def leave(self):
        for channel, handler in list(self.subscriptions.items()):
            try:
                await self.ctx.fabric.unsubscribe(channel, handler)
            except Exception as e:
                logger.error(f"[WS] Manager unsubscribe from {channel} failed: {e}")
        self.subscriptions.clear()
        self.call_id = None

    async def detach(self):
        await self.leave()


# ============ ENDPOINTS ============

async def serve(websocket: WebSocket, connection):
    """Message loop shared by both roles. Only a disconnect ends it."""
    while True:
        try:
            raw = await websocket.receive_text()
        except WebSocketDisconnect:
            break

        try:
            envelope = Envelope.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            await safe_send(websocket, "error", {"message": "Invalid message"})
            continue

        if envelope.type == "ping":
            await safe_send(websocket, "pong")
            continue

        try:
            await connection.handle(envelope)
        except CallSetupError as e:
            logger.warning(f"[WS] Call setup failed for user {connection.user_id}: {e.message}")
            event = e.to_event()
            await connection.send(event["type"], event["payload"])
        except ValidationError as e:
            logger.warning(f"[WS] Invalid {envelope.type} payload: {e}")
            await connection.send("error", {"message": f"Invalid payload for {envelope.type}"})
        except Exception as e:
            logger.error(f"[WS] Error handling {envelope.type} for user {connection.user_id}: {e}", exc_info=True)


async def seller_endpoint(websocket: WebSocket, ctx: AppContext):
    await websocket.accept()
    user_id = await authenticate_websocket(websocket, ctx.repository)
    if user_id is None:
        return

    connection = SellerConnection(websocket, user_id, ctx)
    print(f"[WS] Seller {user_id} connected", flush=True)
    try:
        await serve(websocket, connection)
    finally:
        await connection.detach()
        print(f"[WS] Seller {user_id} disconnected", flush=True)


async def manager_endpoint(websocket: WebSocket, ctx: AppContext):
    await websocket.accept()
    user_id = await authenticate_websocket(websocket, ctx.repository)
    if user_id is None:
        return

    connection = ManagerConnection(websocket, user_id, ctx)
    print(f"[WS] Manager {user_id} connected", flush=True)
    try:
        await serve(websocket, connection)
    finally:
        await connection.detach()
        print(f"[WS] Manager {user_id} disconnected", flush=True)
