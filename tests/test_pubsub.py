"""Transport tests: in-process fan-out, Redis channel plumbing, selection."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from codesense import pubsub
from codesense.pubsub import PRESENCE_EVENT, LocalTransport, RedisChannel, RedisTransport


# ════════════════════════════════════════════════════════════════════
# LOCAL TRANSPORT
# ════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_local_send_reaches_every_subscriber():
    transport = LocalTransport()
    a = await transport.subscribe("c1")
    b = await transport.subscribe("c1")
    other = await transport.subscribe("c2")
    seen = []
    a.on("ping", lambda p: seen.append(("a", p)))
    b.on("ping", lambda p: seen.append(("b", p)))
    other.on("ping", lambda p: seen.append(("other", p)))

    await a.send("ping", 1)

    assert seen == [("a", 1), ("b", 1)]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    transport = LocalTransport()
    channel = await transport.subscribe("c1")
    seen = []

    def broken(payload):
        raise RuntimeError("boom")

    channel.on("ping", broken)
    channel.on("ping", seen.append)

    await channel.send("ping", "x")

    assert seen == ["x"]


@pytest.mark.asyncio
async def test_remover_unregisters_handler():
    transport = LocalTransport()
    channel = await transport.subscribe("c1")
    seen = []
    remove = channel.on("ping", seen.append)

    remove()
    remove()
    await channel.send("ping", "x")

    assert seen == []
    assert channel.handler_count("ping") == 0


@pytest.mark.asyncio
async def test_local_presence_track_and_untrack():
    transport = LocalTransport()
    channel = await transport.subscribe("c1")
    syncs = []
    channel.on(PRESENCE_EVENT, syncs.append)

    await channel.track("u1", {"user_id": "u1", "email": "a@x.com"})
    assert await channel.presence_state() == {"u1": [{"user_id": "u1", "email": "a@x.com"}]}

    await channel.untrack("u1")
    assert await channel.presence_state() == {}
    assert len(syncs) == 2


@pytest.mark.asyncio
async def test_local_unsubscribe_stops_delivery():
    transport = LocalTransport()
    channel = await transport.subscribe("c1")
    seen = []
    channel.on("ping", seen.append)

    await transport.unsubscribe(channel)
    sender = await transport.subscribe("c1")
    await sender.send("ping", 1)

    assert seen == []


# ════════════════════════════════════════════════════════════════════
# REDIS TRANSPORT
# ════════════════════════════════════════════════════════════════════


class FakePubSub:
    """Stands in for redis.asyncio PubSub, fed from a queue."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.subscribe = AsyncMock()
        self.unsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        while True:
            yield await self.queue.get()


def _redis_client(fake_pubsub: FakePubSub) -> MagicMock:
    client = MagicMock()
    client.pubsub.return_value = fake_pubsub
    client.publish = AsyncMock()
    client.hset = AsyncMock()
    client.hdel = AsyncMock()
    client.hgetall = AsyncMock(return_value={})
    client.aclose = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_redis_subscribe_and_dispatch():
    fake = FakePubSub()
    transport = RedisTransport(_redis_client(fake))
    channel = await transport.subscribe("c1")
    seen = []
    channel.on("ping", seen.append)

    fake.subscribe.assert_awaited_once_with("realtime:c1")
    await fake.queue.put({"type": "subscribe", "data": 1})
    await fake.queue.put({"type": "message", "data": b"not json"})
    await fake.queue.put({"type": "message", "data": json.dumps({"event": "ping", "payload": {"n": 1}})})
    for _ in range(20):
        await asyncio.sleep(0)

    assert seen == [{"n": 1}]

    await transport.unsubscribe(channel)
    fake.unsubscribe.assert_awaited_once_with("realtime:c1")
    fake.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_send_publishes_json():
    fake = FakePubSub()
    client = _redis_client(fake)
    channel = RedisChannel("c1", None, client)

    await channel.send("ping", {"n": 1})

    client.publish.assert_awaited_once_with("realtime:c1", json.dumps({"event": "ping", "payload": {"n": 1}}))


@pytest.mark.asyncio
async def test_redis_presence_uses_hash():
    fake = FakePubSub()
    client = _redis_client(fake)
    client.hgetall.return_value = {b"u1": json.dumps({"user_id": "u1"}).encode()}
    channel = RedisChannel("c1", None, client)

    await channel.track("u1", {"user_id": "u1"})
    state = await channel.presence_state()
    await channel.untrack("u1")

    client.hset.assert_awaited_once_with("presence:c1", "u1", json.dumps({"user_id": "u1"}))
    client.hdel.assert_awaited_once_with("presence:c1", "u1")
    assert state == {"u1": [{"user_id": "u1"}]}
    assert client.publish.await_count == 2


class FlakyPubSub(FakePubSub):
    """First listen() call fails; later calls read the queue."""

    def __init__(self) -> None:
        super().__init__()
        self.listen_calls = 0

    async def listen(self):
        self.listen_calls += 1
        if self.listen_calls == 1:
            raise ConnectionError("connection reset")
        while True:
            yield await self.queue.get()


@pytest.mark.asyncio
async def test_redis_non_object_message_is_dropped():
    fake = FakePubSub()
    transport = RedisTransport(_redis_client(fake))
    channel = await transport.subscribe("c1")
    seen = []
    channel.on("ping", seen.append)

    await fake.queue.put({"type": "message", "data": json.dumps(42)})
    await fake.queue.put({"type": "message", "data": json.dumps(["ping", 1])})
    await fake.queue.put({"type": "message", "data": json.dumps({"event": "ping", "payload": 1})})
    for _ in range(20):
        await asyncio.sleep(0)

    assert seen == [1]
    assert not channel._listener.done()
    await transport.unsubscribe(channel)


@pytest.mark.asyncio
async def test_redis_listener_resumes_after_error(monkeypatch):
    monkeypatch.setattr(pubsub, "LISTEN_RETRY_DELAY", 0)
    fake = FlakyPubSub()
    transport = RedisTransport(_redis_client(fake))
    channel = await transport.subscribe("c1")
    seen = []
    channel.on("ping", seen.append)

    await fake.queue.put({"type": "message", "data": json.dumps({"event": "ping", "payload": "after"})})
    for _ in range(20):
        await asyncio.sleep(0)

    assert fake.listen_calls == 2
    assert seen == ["after"]
    await transport.unsubscribe(channel)


@pytest.mark.asyncio
async def test_redis_failed_subscribe_closes_pubsub():
    fake = FakePubSub()
    fake.subscribe = AsyncMock(side_effect=ConnectionError("refused"))
    transport = RedisTransport(_redis_client(fake))

    with pytest.raises(ConnectionError):
        await transport.subscribe("c1")

    fake.aclose.assert_awaited_once()
    fake.unsubscribe.assert_not_awaited()


# ════════════════════════════════════════════════════════════════════
# TRANSPORT SELECTION
# ════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_get_transport_without_redis_url_is_local(monkeypatch):
    monkeypatch.setattr(pubsub, "_transport", None)
    monkeypatch.setattr(pubsub.settings, "redis_url", "")

    transport = await pubsub.get_transport()

    assert isinstance(transport, LocalTransport)
    assert await pubsub.get_transport() is transport
    await pubsub.close_transport()


@pytest.mark.asyncio
async def test_get_transport_falls_back_when_redis_unreachable(monkeypatch):
    client = MagicMock()
    client.ping = AsyncMock(side_effect=ConnectionError("refused"))
    client.aclose = AsyncMock()
    monkeypatch.setattr(pubsub, "_transport", None)
    monkeypatch.setattr(pubsub.settings, "redis_url", "redis://nowhere:6379")
    monkeypatch.setattr(pubsub.redis, "from_url", lambda url: client)

    transport = await pubsub.get_transport()

    assert transport.name == "local"
    client.aclose.assert_awaited_once()
    await pubsub.close_transport()


@pytest.mark.asyncio
async def test_get_transport_uses_redis_when_reachable(monkeypatch):
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    monkeypatch.setattr(pubsub, "_transport", None)
    monkeypatch.setattr(pubsub.settings, "redis_url", "redis://localhost:6379")
    monkeypatch.setattr(pubsub.redis, "from_url", lambda url: client)

    transport = await pubsub.get_transport()

    assert isinstance(transport, RedisTransport)
    await pubsub.close_transport()
    client.aclose.assert_awaited_once()
