"""Publish/subscribe transport for realtime channels.

Two transports share one channel interface:

1. RedisTransport: one Redis PubSub connection per channel name, presence
   kept in a Redis hash so every server process sees the same roster.
2. LocalTransport: in-process fan-out, used when Redis is not configured or
   not reachable (single server instance only).

Presence changes are announced with a "presence" event; subscribers react
by re-reading presence_state().
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import redis.asyncio as redis

from .config import settings

logger = logging.getLogger(__name__)

PRESENCE_EVENT = "presence"
LISTEN_RETRY_DELAY = 1.0  # seconds before re-reading after a listener error

Callback = Callable[[Any], Awaitable[None] | None]

_transport: Transport | None = None


class RealtimeChannel(ABC):
    """Subscription handle for one named channel."""

    def __init__(self, name: str, config: dict | None = None) -> None:
        self.name = name
        self.config = config or {}
        self._handlers: dict[str, list[Callback]] = {}

    def on(self, event: str, callback: Callback) -> Callable[[], None]:
        """Register a callback for an event. Returns a function that removes it."""
        self._handlers.setdefault(event, []).append(callback)

        def remove() -> None:
            handlers = self._handlers.get(event, [])
            if callback in handlers:
                handlers.remove(callback)

        return remove

    def handler_count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._handlers.get(event, []))
        return sum(len(h) for h in self._handlers.values())

    async def dispatch(self, event: str, payload: Any) -> None:
        """Deliver an inbound event to every registered callback."""
        for callback in list(self._handlers.get(event, [])):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler for '{event}' on channel {self.name} failed: {e}", exc_info=True)

    @abstractmethod
    async def send(self, event: str, payload: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    async def track(self, key: str, meta: dict) -> None:
        raise NotImplementedError

    @abstractmethod
    async def untrack(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def presence_state(self) -> dict[str, list[dict]]:
        raise NotImplementedError


class Transport(ABC):
    """External pub/sub primitive consumed by the channel registry."""

    name: str = "base"

    @abstractmethod
    async def subscribe(self, channel_name: str, config: dict | None = None) -> RealtimeChannel:
        raise NotImplementedError

    @abstractmethod
    async def unsubscribe(self, channel: RealtimeChannel) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


# ============ LOCAL TRANSPORT ============


class LocalChannel(RealtimeChannel):
    def __init__(self, name: str, config: dict | None, transport: LocalTransport) -> None:
        super().__init__(name, config)
        self._transport = transport

    async def send(self, event: str, payload: Any) -> None:
        for channel in list(self._transport.subscribers(self.name)):
            await channel.dispatch(event, payload)

    async def track(self, key: str, meta: dict) -> None:
        self._transport.presence.setdefault(self.name, {})[key] = dict(meta)
        await self.send(PRESENCE_EVENT, {"event": "sync"})

    async def untrack(self, key: str) -> None:
        self._transport.presence.get(self.name, {}).pop(key, None)
        await self.send(PRESENCE_EVENT, {"event": "sync"})

    async def presence_state(self) -> dict[str, list[dict]]:
        members = self._transport.presence.get(self.name, {})
        return {key: [dict(meta)] for key, meta in members.items()}


class LocalTransport(Transport):
    """In-process transport. Messages only reach subscribers in this process."""

    name = "local"

    def __init__(self) -> None:
        self._topics: dict[str, list[LocalChannel]] = {}
        self.presence: dict[str, dict[str, dict]] = {}
        self.subscribe_calls = 0

    def subscribers(self, channel_name: str) -> list[LocalChannel]:
        return self._topics.get(channel_name, [])

    async def subscribe(self, channel_name: str, config: dict | None = None) -> RealtimeChannel:
        self.subscribe_calls += 1
        channel = LocalChannel(channel_name, config, self)
        self._topics.setdefault(channel_name, []).append(channel)
        return channel

    async def unsubscribe(self, channel: RealtimeChannel) -> None:
        topic = self._topics.get(channel.name, [])
        if channel in topic:
            topic.remove(channel)
        if not topic:
            self._topics.pop(channel.name, None)


# ============ REDIS TRANSPORT ============


class RedisChannel(RealtimeChannel):
    def __init__(self, name: str, config: dict | None, client: redis.Redis) -> None:
        super().__init__(name, config)
        self._client = client
        self._pubsub = client.pubsub()
        self._listener: asyncio.Task | None = None

    @property
    def topic(self) -> str:
        return f"realtime:{self.name}"

    @property
    def presence_key(self) -> str:
        return f"presence:{self.name}"

    async def open(self) -> None:
        try:
            await self._pubsub.subscribe(self.topic)
        except Exception:
            await self._pubsub.aclose()
            raise
        self._listener = asyncio.create_task(self._listen())

    async def close(self) -> None:
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        await self._pubsub.unsubscribe(self.topic)
        await self._pubsub.aclose()

    async def _listen(self) -> None:
        """Read messages from Redis and dispatch them to callbacks.

        Connection errors are logged and listening resumes after a delay.
        """
        while True:
            try:
                async for message in self._pubsub.listen():
                    await self._handle_message(message)
                return
            except Exception as e:
                logger.error(f"Listener on {self.topic} failed, retrying: {e}")
                await asyncio.sleep(LISTEN_RETRY_DELAY)

    async def _handle_message(self, message: Any) -> None:
        if not isinstance(message, dict) or message.get("type") != "message":
            return
        try:
            data = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning(f"Dropping undecodable message on {self.topic}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Dropping non-object message on {self.topic}")
            return
        await self.dispatch(data.get("event"), data.get("payload"))

    async def send(self, event: str, payload: Any) -> None:
        message = json.dumps({"event": event, "payload": payload}, default=str)
        await self._client.publish(self.topic, message)

    async def track(self, key: str, meta: dict) -> None:
        await self._client.hset(self.presence_key, key, json.dumps(meta, default=str))
        await self.send(PRESENCE_EVENT, {"event": "sync"})

    async def untrack(self, key: str) -> None:
        await self._client.hdel(self.presence_key, key)
        await self.send(PRESENCE_EVENT, {"event": "sync"})

    async def presence_state(self) -> dict[str, list[dict]]:
        members = await self._client.hgetall(self.presence_key)
        state: dict[str, list[dict]] = {}
        for key, raw in members.items():
            if isinstance(key, bytes):
                key = key.decode()
            state[key] = [json.loads(raw)]
        return state


class RedisTransport(Transport):
    """Redis pub/sub transport shared by every server process."""

    name = "redis"

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    async def subscribe(self, channel_name: str, config: dict | None = None) -> RealtimeChannel:
        channel = RedisChannel(channel_name, config, self._client)
        await channel.open()
        logger.debug(f"Subscribed to {channel.topic}")
        return channel

    async def unsubscribe(self, channel: RealtimeChannel) -> None:
        if isinstance(channel, RedisChannel):
            await channel.close()

    async def close(self) -> None:
        await self._client.aclose()


# ============ TRANSPORT SELECTION ============


async def get_transport() -> Transport:
    """Get or create the process transport.

    Uses Redis when REDIS_URL is set and reachable, falls back to the
    in-process transport otherwise.
    """
    global _transport

    if _transport is not None:
        return _transport

    if settings.redis_url:
        client = redis.from_url(settings.redis_url)
        try:
            await client.ping()
            _transport = RedisTransport(client)
            logger.info("Realtime transport: redis")
            return _transport
        except Exception as e:
            logger.warning(
                f"Redis connection failed, using in-process transport: {e}. "
                "Collaboration only works within a single server instance."
            )
            await client.aclose()

    _transport = LocalTransport()
    logger.info("Realtime transport: local")
    return _transport


async def close_transport() -> None:
    """Close the process transport."""
    global _transport
    if _transport is not None:
        await _transport.close()
        _transport = None
