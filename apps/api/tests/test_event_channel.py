"""
Worker -> web event channel: publish format, relay dispatch to sockets.
"""
import asyncio
import json

from conftest import FakeRedis
from services.event_channel import (
    EVENT_GENERATION_COMPLETE,
    ConnectionManager,
    RedisEventChannel,
    decode_event,
    encode_event,
)


class FakeWebSocket:
    def __init__(self, broken=False):
        self.accepted = False
        self.sent = []
        self.broken = broken

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(data)


def test_publish_writes_one_json_message():
    redis = FakeRedis()
    RedisEventChannel(redis, "worker-events").publish("user-1", EVENT_GENERATION_COMPLETE, {"reportId": "r1"})

    [(channel, message)] = redis.published
    assert channel == "worker-events"
    assert json.loads(message) == {"userId": "user-1", "type": "generation-complete", "payload": {"reportId": "r1"}}


def test_publish_survives_redis_outage():
    RedisEventChannel(FakeRedis(fail_publish=True), "worker-events").publish("user-1", "ai-stream", {})
    RedisEventChannel(None, "worker-events").publish("user-1", "ai-stream", {})


def test_decode_rejects_malformed_messages():
    assert decode_event("not json") is None
    assert decode_event(json.dumps({"type": "ai-stream"})) is None
    assert decode_event(encode_event("u", "ai-stream", {"chunk": "x"}).encode())["payload"] == {"chunk": "x"}


def test_dispatch_reaches_every_session_of_the_user():
    manager = ConnectionManager()
    tab_one, tab_two, other = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()

    async def scenario():
        await manager.connect("user-1", tab_one)
        await manager.connect("user-1", tab_two)
        await manager.connect("user-2", other)
        return await manager.dispatch(encode_event("user-1", "ai-stream", {"chunk": "hello"}))

    delivered = asyncio.run(scenario())

    assert delivered == 2
    assert tab_one.accepted
    assert tab_one.sent == [{"event": "ai-stream", "data": {"chunk": "hello"}}]
    assert tab_two.sent == tab_one.sent
    assert other.sent == []


def test_dead_sockets_are_dropped():
    manager = ConnectionManager()
    alive, dead = FakeWebSocket(), FakeWebSocket(broken=True)

    async def scenario():
        await manager.connect("user-1", alive)
        await manager.connect("user-1", dead)
        return await manager.send_to_user("user-1", "ai-stream", {})

    assert asyncio.run(scenario()) == 1
    assert manager.session_count("user-1") == 1


def test_event_for_offline_user_is_dropped():
    manager = ConnectionManager()
    assert asyncio.run(manager.dispatch(encode_event("nobody", "ai-stream", {}))) == 0
    manager.disconnect("nobody", FakeWebSocket())
    assert manager.session_count("nobody") == 0
