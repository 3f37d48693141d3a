#!/usr/bin/env python3
"""
Tests for channel event parsing and intent validation.

Run tests:
    pytest tests/test_event_schemas.py -v
"""

import pytest

from core.event_schemas import (
    EVENT_SCHEMA_VERSION, ChannelEvent, EventType, build_intent, parse_event,
)
from core.exceptions import ValidationError
from core.models import OrderStatus


class TestParseEvent:

    def test_valid_status_event(self):
        event = parse_event({
            "event_type": "order_status_changed",
            "order_id": "O1",
            "status": "PICKED",
            "seq": 3,
        })
        assert event.event_type is EventType.ORDER_STATUS_CHANGED
        assert event.status is OrderStatus.PICKED
        assert event.schema_version == EVENT_SCHEMA_VERSION

    def test_model_dump_round_trip(self):
        event = ChannelEvent(event_type=EventType.ORDER_ASSIGNED, order_id="O1", partner_id="P1", seq=1)
        assert parse_event(event.model_dump(mode="json")) == event

    @pytest.mark.parametrize("payload", [
        "not a dict",
        {"event_type": "order_teleported", "order_id": "O1"},
        {"event_type": "order_status_changed", "order_id": "O1"},
        {"event_type": "order_assigned", "order_id": "O1"},
        {"event_type": "order_created", "order_id": "O1"},
        {"event_type": "order_status_changed", "order_id": "O1", "status": "LOST"},
        {"event_type": "order_delivered", "order_id": "O1", "seq": -1},
        {"event_type": "order_delivered", "order_id": "O1", "schema_version": 2},
    ])
    def test_malformed_payloads_raise(self, payload):
        with pytest.raises(ValidationError):
            parse_event(payload)

    def test_resync_needs_no_fields(self):
        assert parse_event({"event_type": "resync_required"}).order_id is None


class TestBuildIntent:

    def test_valid_intent(self):
        intent = build_intent("O1", "P1", "tok_0123456789")
        assert (intent.order_id, intent.partner_id) == ("O1", "P1")

    @pytest.mark.parametrize("order_id,partner_id,token", [
        ("", "P1", "tok_0123456789"),
        ("O1", "", "tok_0123456789"),
        ("O1", "P1", "short"),
        (None, "P1", "tok_0123456789"),
    ])
    def test_invalid_intent_raises(self, order_id, partner_id, token):
        with pytest.raises(ValidationError):
            build_intent(order_id, partner_id, token)
