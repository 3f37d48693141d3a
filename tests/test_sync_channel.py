#!/usr/bin/env python3
"""
Tests for the push channel.

Test Coverage:
- Typed dispatch and the "*" wildcard
- Malformed payloads dropped and counted
- Reconnect emits resync_required, nothing buffered while disconnected
- Credentials checked on connect

Run tests:
    pytest tests/test_sync_channel.py -v
"""

import asyncio

import pytest

from core.event_schemas import ChannelEvent, EventType
from core.exceptions import AuthError
from services.sync_channel import ANY_EVENT, ChannelHub, SyncChannel


def assigned(order_id="O1", partner_id="P1", seq=1):
    return ChannelEvent(
        event_type=EventType.ORDER_ASSIGNED, order_id=order_id, partner_id=partner_id, seq=seq,
    ).model_dump(mode="json")


@pytest.fixture
def hub():
    return ChannelHub()


class TestDispatch:

    def test_typed_and_wildcard_handlers(self, hub):
        typed, everything = [], []

        async def scenario():
            channel = SyncChannel(hub, "test")
            channel.subscribe(EventType.ORDER_ASSIGNED, typed.append)
            channel.subscribe(ANY_EVENT, everything.append)
            await channel.connect()

            hub.broadcast(assigned())
            hub.broadcast(ChannelEvent(event_type=EventType.PARTNER_AVAILABLE, partner_id="P1").model_dump(mode="json"))
            await channel.drain()
            await channel.disconnect()

        asyncio.run(scenario())

        assert [e.order_id for e in typed] == ["O1"]
        assert [e.event_type for e in everything] == [EventType.ORDER_ASSIGNED, EventType.PARTNER_AVAILABLE]

    def test_malformed_payloads_are_dropped(self, hub):
        seen = []

        async def scenario():
            channel = SyncChannel(hub, "test")
            channel.subscribe(ANY_EVENT, seen.append)
            await channel.connect()

            hub.broadcast({"event_type": "order_status_changed", "order_id": "O1"})
            hub.broadcast({**assigned(), "schema_version": 2})
            hub.broadcast("garbage")
            hub.broadcast(assigned())
            await channel.drain()
            await channel.disconnect()
            return channel

        channel = asyncio.run(scenario())

        assert channel.dropped_malformed == 3
        assert channel.received == 1
        assert len(seen) == 1

    def test_closed_subscription_stops_delivery(self, hub):
        seen = []

        async def scenario():
            channel = SyncChannel(hub, "test")
            sub = channel.subscribe(ANY_EVENT, seen.append)
            await channel.connect()
            sub.close()
            hub.broadcast(assigned())
            await channel.drain()
            await channel.disconnect()

        asyncio.run(scenario())
        assert seen == []


class TestConnection:

    def test_reconnect_requests_resync_and_skips_missed_events(self, hub):
        seen = []

        async def scenario():
            channel = SyncChannel(hub, "test")
            channel.subscribe(ANY_EVENT, seen.append)
            await channel.connect()
            await channel.disconnect()

            hub.broadcast(assigned())
            assert hub.listener_count == 0

            await channel.connect()
            await channel.drain()
            await channel.disconnect()

        asyncio.run(scenario())

        assert [e.event_type for e in seen] == [EventType.RESYNC_REQUIRED]

    def test_first_connect_does_not_request_resync(self, hub):
        seen = []

        async def scenario():
            channel = SyncChannel(hub, "test")
            channel.subscribe(ANY_EVENT, seen.append)
            await channel.connect()
            await channel.drain()
            await channel.disconnect()

        asyncio.run(scenario())
        assert seen == []

    def test_rejected_credentials(self, backend, credentials):
        async def scenario():
            channel = SyncChannel(backend.hub, "test")
            with pytest.raises(AuthError):
                await channel.connect("wrong")
            assert not channel.connected

            await channel.connect(credentials)
            assert channel.connected
            await channel.disconnect()
            assert not channel.connected

        asyncio.run(scenario())

    def test_disconnect_releases_pending_drain(self, hub):
        seen = []

        async def scenario():
            channel = SyncChannel(hub, "test")
            channel.subscribe(ANY_EVENT, seen.append)
            await channel.connect()
            for seq in range(1, 4):
                hub.broadcast(assigned(seq=seq))
            waiter = asyncio.ensure_future(channel.drain())

            await channel.disconnect()
            await asyncio.wait_for(waiter, timeout=1.0)

        asyncio.run(scenario())
        assert seen == []
