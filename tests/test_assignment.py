#!/usr/bin/env python3
"""
Tests for the AssignmentCoordinator.

Test Coverage:
- N concurrent intents for one order: exactly one success
- Validation before forwarding
- Token idempotency across retries and replays
- Confirmation handling (apply, replay no-op, conflicting partner)
- Auth failure invalidates credentials

Run tests:
    pytest tests/test_assignment.py -v
"""

import asyncio

import pytest

from core.event_schemas import ChannelEvent, EventType
from core.exceptions import AuthError, BusinessRuleError, PartnerBusy, ValidationError
from core.models import PartnerAvailability
from services.assignment import AssignmentCoordinator
from services.backend import Credentials
from services.overlays import OverlayRegistry


@pytest.fixture
def overlays():
    return OverlayRegistry(timeout_s=5.0)


@pytest.fixture
def coordinator(store, backend, overlays, credentials):
    overlays.attach(store)
    return AssignmentCoordinator(store, backend, overlays, Credentials(credentials))


def assigned_event(order_id, partner_id, token="tok_0123456789abcdef"):
    return ChannelEvent(
        event_type=EventType.ORDER_ASSIGNED,
        order_id=order_id,
        partner_id=partner_id,
        intent_token=token,
    )


class TestConcurrentIntents:

    @pytest.mark.parametrize("n", [2, 5, 20])
    def test_exactly_one_intent_wins(self, coordinator, backend, overlays, n):
        backend.create_order("O1")

        async def race():
            return await asyncio.gather(*(
                coordinator.request_assignment("O1", f"R{i}") for i in range(n)
            ))

        results = asyncio.run(race())

        winners = [r for r in results if r.accepted]
        assert len(winners) == 1
        assert all(r.reason == "already_assigned" for r in results if r.rejected)
        assert backend.get_order("O1").assigned_partner == winners[0].partner_id
        # Losers' overlays are discarded; the winner waits for its confirmation
        assert [o.token for o in overlays.pending()] == [winners[0].token]

    def test_busy_partner_is_rejected(self, coordinator, backend):
        backend.create_order("O1")
        backend.create_order("O2")

        async def scenario():
            first = await coordinator.request_assignment("O1", "P1")
            second = await coordinator.request_assignment("O2", "P1")
            return first, second

        first, second = asyncio.run(scenario())

        assert first.accepted
        assert second.reason == "partner_busy"
        assert backend.get_order("O2").assigned_partner is None

    def test_unknown_order_is_rejected(self, coordinator):
        result = asyncio.run(coordinator.request_assignment("missing", "P1"))
        assert result.rejected
        assert result.reason == "not_found"


class TestValidation:

    def test_empty_partner_is_not_forwarded(self, coordinator, backend, overlays):
        backend.create_order("O1")

        with pytest.raises(ValidationError):
            asyncio.run(coordinator.request_assignment("O1", ""))

        assert "request_assignment" not in backend.calls
        assert len(overlays) == 0

    def test_short_token_is_not_forwarded(self, coordinator, backend):
        with pytest.raises(ValidationError):
            asyncio.run(coordinator.request_assignment("O1", "P1", token="abc"))
        assert "request_assignment" not in backend.calls


class TestIdempotency:

    def test_retry_after_network_error_reuses_token(self, coordinator, backend):
        backend.create_order("O1")
        backend.fail_next(1)

        result = asyncio.run(coordinator.request_assignment("O1", "P1"))

        assert result.accepted
        assert backend.calls["request_assignment"] == 2
        assert backend.get_order("O1").assigned_partner == "P1"

    def test_replayed_intent_is_accepted_once(self, coordinator, backend):
        backend.create_order("O1")
        token = "tok_replay_0001"

        async def scenario():
            first = await coordinator.request_assignment("O1", "P1", token=token)
            second = await coordinator.request_assignment("O1", "P1", token=token)
            return first, second

        first, second = asyncio.run(scenario())

        assert first.accepted and not first.replayed
        assert second.accepted and second.replayed


class TestConfirmations:

    def test_confirmation_assigns_order(self, coordinator, store, make_order):
        store.upsert(make_order())

        result = coordinator.apply_confirmation(assigned_event("O1", "P1"))

        assert result.applied
        assert store.get("O1").assigned_partner == "P1"
        assert store.get_available() == []

    def test_replayed_confirmation_is_noop(self, coordinator, store, make_order):
        store.upsert(make_order(partner="P1"))
        version = store.version

        result = coordinator.apply_confirmation(assigned_event("O1", "P1"))

        assert not result.applied
        assert result.reason == "replayed"
        assert store.version == version

    def test_conflicting_confirmation_is_rejected(self, coordinator, store, make_order):
        store.upsert(make_order(partner="P1"))

        result = coordinator.apply_confirmation(assigned_event("O1", "P2"))

        assert result.reason == "assignment_conflict"
        assert store.get("O1").assigned_partner == "P1"

    def test_confirmation_settles_overlay(self, coordinator, store, overlays, make_order):
        store.upsert(make_order())
        overlays.add("O1", "tok_pending_0001", "assignment", {"assigned_partner": "P1"})

        coordinator.apply_confirmation(assigned_event("O1", "P1"))

        assert len(overlays) == 0


class TestAuth:

    def test_rejected_credentials_are_invalidated(self, store, backend, overlays):
        backend.create_order("O1")
        credentials = Credentials("wrong")
        coordinator = AssignmentCoordinator(store, backend, overlays, credentials)

        with pytest.raises(AuthError):
            asyncio.run(coordinator.request_assignment("O1", "P1"))

        assert not credentials.valid
        assert len(overlays) == 0
        assert backend.get_order("O1").assigned_partner is None

        # Fails fast afterwards, nothing forwarded
        calls = backend.calls["request_assignment"]
        with pytest.raises(AuthError):
            asyncio.run(coordinator.request_assignment("O1", "P1"))
        assert backend.calls["request_assignment"] == calls


class TestPartnerAvailability:

    def test_offline_partner_is_rejected(self, coordinator, backend, overlays, credentials):
        backend.create_order("O1")

        async def scenario():
            await backend.set_partner_availability("P1", PartnerAvailability.OFFLINE, credentials)
            return await coordinator.request_assignment("O1", "P1")

        result = asyncio.run(scenario())

        assert result.reason == "partner_unavailable"
        assert backend.get_order("O1").assigned_partner is None
        assert len(overlays) == 0

    def test_cannot_go_offline_with_active_order(self, coordinator, backend, credentials):
        backend.create_order("O1")

        async def scenario():
            await coordinator.request_assignment("O1", "P1")
            with pytest.raises(PartnerBusy):
                await backend.set_partner_availability("P1", PartnerAvailability.OFFLINE, credentials)

        asyncio.run(scenario())
        assert backend.get_partner("P1").availability is PartnerAvailability.BUSY

    def test_back_online_can_be_assigned(self, coordinator, backend, credentials):
        backend.create_order("O1")

        async def scenario():
            await backend.set_partner_availability("P1", PartnerAvailability.OFFLINE, credentials)
            await backend.set_partner_availability("P1", PartnerAvailability.AVAILABLE, credentials)
            return await coordinator.request_assignment("O1", "P1")

        assert asyncio.run(scenario()).accepted

    def test_busy_cannot_be_requested(self, backend, credentials):
        with pytest.raises(BusinessRuleError):
            asyncio.run(backend.set_partner_availability("P1", PartnerAvailability.BUSY, credentials))
