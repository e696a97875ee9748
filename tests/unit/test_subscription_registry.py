from __future__ import annotations

import pytest

from chat_realtime.services.subscription_registry import SubscriptionRegistry
from tests.conftest import FakeBroker


@pytest.mark.asyncio
async def test_two_callbacks_share_one_broker_subscription(broker, fast_sleep):
    registry = SubscriptionRegistry(broker, sleep=fast_sleep)
    first, second = [], []

    await registry.subscribe("/topic/chatrooms/1", first.append)
    await registry.subscribe("/topic/chatrooms/1", second.append)
    await broker.deliver("/topic/chatrooms/1", {"id": 1})
    await broker.deliver("/topic/chatrooms/1", {"id": 2})

    assert broker.subscribe_calls == ["/topic/chatrooms/1"]
    assert [f.json()["id"] for f in first] == [1, 2]
    assert [f.json()["id"] for f in second] == [1, 2]


@pytest.mark.asyncio
async def test_subscribe_while_offline_is_deferred(fast_sleep):
    broker = FakeBroker(connected=False)
    registry = SubscriptionRegistry(broker, sleep=fast_sleep)

    await registry.subscribe("/topic/chatrooms/1", lambda frame: None)
    assert broker.subscribe_calls == []
    assert not registry.is_active("/topic/chatrooms/1")

    await broker.set_connected(True)

    assert broker.subscribe_calls == ["/topic/chatrooms/1"]
    assert registry.is_active("/topic/chatrooms/1")


@pytest.mark.asyncio
async def test_reconnect_replays_every_destination(broker, fast_sleep):
    registry = SubscriptionRegistry(broker, replay_delay=0.05, sleep=fast_sleep)
    received = []
    for room_id in (1, 2, 3):
        await registry.subscribe(f"/topic/chatrooms/{room_id}", received.append)

    await broker.set_connected(False)
    await broker.set_connected(True)
    await broker.deliver("/topic/chatrooms/2", {"id": 9})

    assert broker.subscribe_calls[3:] == [
        "/topic/chatrooms/1",
        "/topic/chatrooms/2",
        "/topic/chatrooms/3",
    ]
    assert fast_sleep.delays == [0.05, 0.05]
    assert len(received) == 1


@pytest.mark.asyncio
async def test_destination_without_callbacks_is_dropped(broker, fast_sleep):
    registry = SubscriptionRegistry(broker, sleep=fast_sleep)
    first = await registry.subscribe("/topic/chatrooms/1", lambda frame: None)
    second = await registry.subscribe("/topic/chatrooms/1", lambda frame: None)

    await registry.unsubscribe(first)
    assert broker.unsubscribed == []

    await registry.unsubscribe(second)
    assert broker.unsubscribed == ["sub-1"]
    assert registry.destinations == []

    await broker.set_connected(False)
    await broker.set_connected(True)
    assert broker.subscribe_calls == ["/topic/chatrooms/1"]


@pytest.mark.asyncio
async def test_unsubscribe_twice_is_harmless(broker, fast_sleep):
    registry = SubscriptionRegistry(broker, sleep=fast_sleep)
    handle = await registry.subscribe("/topic/a", lambda frame: None)

    await registry.unsubscribe(handle)
    await registry.unsubscribe(handle)

    assert broker.unsubscribed == ["sub-1"]


@pytest.mark.asyncio
async def test_failing_callback_does_not_block_others(broker, fast_sleep):
    registry = SubscriptionRegistry(broker, sleep=fast_sleep)
    received = []

    async def broken(frame):
        raise RuntimeError("boom")

    await registry.subscribe("/topic/a", broken)
    await registry.subscribe("/topic/a", received.append)
    await broker.deliver("/topic/a", {"ok": True})

    assert len(received) == 1


@pytest.mark.asyncio
async def test_clear_drains_everything(broker, fast_sleep):
    registry = SubscriptionRegistry(broker, sleep=fast_sleep)
    await registry.subscribe("/topic/a", lambda frame: None)
    await registry.subscribe("/topic/b", lambda frame: None)

    await registry.clear()

    assert registry.destinations == []
    assert sorted(broker.unsubscribed) == ["sub-1", "sub-2"]
    await broker.set_connected(False)
    await broker.set_connected(True)
    assert broker.subscribe_calls == ["/topic/a", "/topic/b"]
