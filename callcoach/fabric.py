"""
CallCoach Cache + Pub/Sub Fabric
================================
Uniform get/set/publish/subscribe over Redis, with an in-process fallback.

- RedisFabric: distributed backend (redis.asyncio), one dedicated pubsub
  connection + listener task per subscribed channel
- MemoryFabric: dict with TTLs, publish calls local handlers directly
- DegradingFabric: uses Redis until the first connection failure, then
  switches to memory for the rest of the process lifetime (never flaps back)

Handlers live in a shared HandlerRegistry so they survive a mode switch.
"""

import asyncio
import inspect
import json
import logging
import time
import weakref
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Awaitable[None], None]]

# Anything that means "the distributed backend is not reachable"
BACKEND_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class HandlerRegistry:
    """Process-local channel -> handlers map (ordered set semantics)"""

    def __init__(self):
        self._handlers: Dict[str, Dict[Handler, None]] = {}

    def add(self, channel: str, handler: Handler) -> bool:
        """Register handler. Returns True if this is the channel's first handler."""
        handlers = self._handlers.setdefault(channel, {})
        first = not handlers
        handlers[handler] = None
        return first

    def remove(self, channel: str, handler: Handler) -> bool:
        """Unregister handler. Returns True if the channel has no handlers left."""
        handlers = self._handlers.get(channel)
        if handlers is None:
            return True
        handlers.pop(handler, None)
        if not handlers:
            del self._handlers[channel]
            return True
        return False

    def snapshot(self, channel: str) -> List[Handler]:
        # Copy so handlers can (un)subscribe while we iterate
        return list(self._handlers.get(channel, ()))

    def channels(self) -> List[str]:
        return list(self._handlers)

    def count(self, channel: str) -> int:
        return len(self._handlers.get(channel, ()))

    async def dispatch(self, channel: str, message: Any) -> int:
        """Invoke every handler of channel. A failing handler never stops the others."""
        delivered = 0
        for handler in self.snapshot(channel):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(f"Handler for {channel} failed: {e}", exc_info=True)
        return delivered


class MemoryFabric:
    """In-process cache and pub/sub"""

    mode = "memory"

    def __init__(self, registry: HandlerRegistry):
        self.registry = registry
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._data[key] = (json.dumps(value), expires_at)

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        serialized, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            self._data.pop(key, None)
            return None
        return json.loads(serialized)

    async def delete(self, key: str):
        self._data.pop(key, None)

    async def publish(self, channel: str, message: Any):
        # Same shape subscribers would get from Redis
        await self.registry.dispatch(channel, json.loads(json.dumps(message)))

    async def subscribe(self, channel: str, handler: Handler):
        self.registry.add(channel, handler)

    async def unsubscribe(self, channel: str, handler: Handler):
        self.registry.remove(channel, handler)

    async def close(self):
        self._data.clear()


class RedisFabric:
    """Redis-backed cache and pub/sub"""

    mode = "redis"

    def __init__(
        self,
        client: "aioredis.Redis",
        registry: HandlerRegistry,
        on_connection_lost: Optional[Callable[[Exception], None]] = None,
    ):
        self.client = client
        self.registry = registry
        self.on_connection_lost = on_connection_lost
        self._listeners: Dict[str, Tuple[Any, asyncio.Task]] = {}
        # Serializes listener setup/teardown per channel
        self._channel_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def ping(self):
        await self.client.ping()

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        serialized = json.dumps(value)
        if ttl_seconds:
            await self.client.set(key, serialized, ex=ttl_seconds)
        else:
            await self.client.set(key, serialized)

    async def get(self, key: str) -> Optional[Any]:
        data = await self.client.get(key)
        if not data:
            return None
        return json.loads(data)

    async def delete(self, key: str):
        await self.client.delete(key)

    async def publish(self, channel: str, message: Any):
        await self.client.publish(channel, json.dumps(message))

    def _channel_lock(self, channel: str) -> asyncio.Lock:
        lock = self._channel_locks.get(channel)
        if lock is None:
            lock = asyncio.Lock()
            self._channel_locks[channel] = lock
        return lock

    async def subscribe(self, channel: str, handler: Handler):
        self.registry.add(channel, handler)
        async with self._channel_lock(channel):
            # Re-checked under the lock: concurrent subscribes share one listener
            if channel in self._listeners or not self.registry.count(channel):
                return

            pubsub = self.client.pubsub()
            await pubsub.subscribe(channel)
            task = asyncio.create_task(self._listen(channel, pubsub))
            self._listeners[channel] = (pubsub, task)
            logger.info(f"Subscribed to {channel}")

    async def unsubscribe(self, channel: str, handler: Handler):
        if not self.registry.remove(channel, handler):
            return
        async with self._channel_lock(channel):
            # A subscribe may have re-registered the channel while we waited
            if self.registry.count(channel):
                return
            listener = self._listeners.pop(channel, None)
            if listener is None:
                return
            pubsub, task = listener
            task.cancel()
            try:
                await pubsub.unsubscribe(channel)
            finally:
                await pubsub.aclose()
            logger.info(f"Unsubscribed from {channel}")

    def drop_listener(self, channel: str):
        """Cancel a channel's listener without touching the network"""
        listener = self._listeners.pop(channel, None)
        if listener is not None:
            listener[1].cancel()

    async def _listen(self, channel: str, pubsub):
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    data = json.loads(message["data"])
                except (TypeError, ValueError) as e:
                    logger.error(f"Failed to parse message from {channel}: {e}")
                    continue
                await self.registry.dispatch(channel, data)
        except asyncio.CancelledError:
            raise
        except BACKEND_ERRORS as e:
            logger.warning(f"Redis subscriber for {channel} lost its connection: {e}")
            if self.on_connection_lost:
                self.on_connection_lost(e)
        except Exception as e:
            logger.error(f"Redis subscriber for {channel} crashed: {e}", exc_info=True)

    async def close(self):
        for channel in list(self._listeners):
            pubsub, task = self._listeners.pop(channel)
            task.cancel()
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except Exception as e:
                logger.warning(f"Error closing subscription {channel}: {e}")
        await self.client.aclose()
        logger.info("All Redis subscriptions cleaned up")


class DegradingFabric:
    """
    Redis first, memory forever after the first connection failure.

    Call sites never check the mode themselves; every operation routes here.
    """

    def __init__(self, primary: Optional[RedisFabric], fallback: MemoryFabric):
        self._primary = primary
        self._fallback = fallback
        self._degraded = primary is None
        if primary is not None:
            primary.on_connection_lost = self._degrade

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def mode(self) -> str:
        return self._fallback.mode if self._degraded else self._primary.mode

    def _degrade(self, error: Exception):
        if self._degraded:
            return
        self._degraded = True
        logger.warning(f"Redis unreachable ({error}), switching to in-memory cache and pub/sub")

    async def ping(self) -> bool:
        if self._degraded:
            return False
        try:
            await self._primary.ping()
            return True
        except BACKEND_ERRORS as e:
            self._degrade(e)
            return False

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        if not self._degraded:
            try:
                return await self._primary.set(key, value, ttl_seconds)
            except BACKEND_ERRORS as e:
                self._degrade(e)
        await self._fallback.set(key, value, ttl_seconds)

    async def get(self, key: str) -> Optional[Any]:
        if not self._degraded:
            try:
                return await self._primary.get(key)
            except BACKEND_ERRORS as e:
                self._degrade(e)
        return await self._fallback.get(key)

    async def delete(self, key: str):
        if not self._degraded:
            try:
                return await self._primary.delete(key)
            except BACKEND_ERRORS as e:
                self._degrade(e)
        await self._fallback.delete(key)

    async def publish(self, channel: str, message: Any):
        if not self._degraded:
            try:
                return await self._primary.publish(channel, message)
            except BACKEND_ERRORS as e:
                self._degrade(e)
        await self._fallback.publish(channel, message)

    async def subscribe(self, channel: str, handler: Handler):
        # Local registration first: it must survive a later mode switch
        await self._fallback.subscribe(channel, handler)
        if self._degraded:
            return
        try:
            await self._primary.subscribe(channel, handler)
        except BACKEND_ERRORS as e:
            self._degrade(e)

    async def unsubscribe(self, channel: str, handler: Handler):
        if not self._degraded:
            try:
                await self._primary.unsubscribe(channel, handler)
            except BACKEND_ERRORS as e:
                self._degrade(e)
        await self._fallback.unsubscribe(channel, handler)
        if self._degraded and self._primary is not None and self._fallback.registry.count(channel) == 0:
            self._primary.drop_listener(channel)

    async def close(self):
        if self._primary is not None:
            try:
                await self._primary.close()
            except BACKEND_ERRORS as e:
                logger.warning(f"Redis close failed: {e}")
        await self._fallback.close()


def create_fabric(redis_url: str) -> DegradingFabric:
    """Build the process fabric from a REDIS_URL (empty or memory: => in-process only)"""
    registry = HandlerRegistry()
    fallback = MemoryFabric(registry)

    if not redis_url or redis_url.startswith("memory:"):
        logger.warning("REDIS_URL not set or memory mode - using in-memory cache and pub/sub")
        return DegradingFabric(None, fallback)

    client = aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=2,
        health_check_interval=30,
    )
    return DegradingFabric(RedisFabric(client, registry), fallback)
