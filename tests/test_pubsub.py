import asyncio

import pytest

from ordersync.services.errors import ChannelAuthError
from ordersync.utils.pubsub import ChannelHub


def test_publish_reaches_listeners_with_or_without_leading_dot():
    hub = ChannelHub()
    got = []
    hub.subscribe("restaurant.1.kitchen").listen(".order.created", got.append)

    delivered = asyncio.run(hub.publish("restaurant.1.kitchen", "order.created", {"order": {"id": 1}}))
    assert delivered == 1
    assert got == [{"order": {"id": 1}}]


def test_async_listeners_are_awaited():
    hub = ChannelHub()
    got = []

    async def listener(payload):
        await asyncio.sleep(0)
        got.append(payload)

    hub.subscribe("c").listen("e", listener)
    asyncio.run(hub.publish("c", "e", 1))
    assert got == [1]


def test_failing_listener_does_not_stop_others():
    hub = ChannelHub()
    got = []

    def broken(payload):
        raise ValueError("bad listener")

    hub.subscribe("c").listen("e", broken).listen("e", got.append)
    delivered = asyncio.run(hub.publish("c", "e", "x"))
    assert delivered == 1
    assert got == ["x"]


def test_subscribe_is_idempotent_per_channel():
    hub = ChannelHub()
    assert hub.subscribe("c") is hub.subscribe("c")
    assert hub.subscribe_count == 1
    hub.leave("c")
    hub.leave("c")
    assert hub.leave_count == 1
    assert hub.channels == []


def test_stop_listening_single_callback():
    hub = ChannelHub()
    got = []

    def first(payload):
        got.append(("first", payload))

    def second(payload):
        got.append(("second", payload))

    handle = hub.subscribe("c").listen("e", first).listen("e", second)
    handle.stop_listening("e", first)
    assert handle.listener_count() == 1
    asyncio.run(hub.publish("c", "e", 1))
    assert got == [("second", 1)]
    handle.stop_listening(".e")
    assert handle.listener_count() == 0


def test_private_channel_needs_authorization():
    hub = ChannelHub(authorizer=lambda name, token: token == "ok", token=None)
    with pytest.raises(ChannelAuthError):
        hub.subscribe("restaurant.1.kitchen", private=True)
    # public channels are not checked
    hub.subscribe("table-session.7")


def test_uninitialized_transport_refuses_subscriptions():
    hub = ChannelHub(initialized=False)
    with pytest.raises(RuntimeError):
        hub.subscribe("c")


def test_sse_queues_receive_envelopes():
    hub = ChannelHub()
    q = hub.register_queue()
    asyncio.run(hub.publish("c", ".order.created", {"order": {"id": 2}}))
    assert q.get_nowait() == {"channel": "c", "event": "order.created", "data": {"order": {"id": 2}}}
    hub.unregister_queue(q)
    hub.unregister_queue(q)
    assert hub.get_status()["sse_queues"] == 0
