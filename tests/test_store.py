#!/usr/bin/env python3
"""
Unit Tests for OrderStateStore

Test Coverage:
- Rank-based conflict policy (stale, advance, cancel override, terminal)
- At-most-one assignment, forced authoritative overwrite
- Partner bookkeeping on assignment and delivery
- Queries (available pool, active, history, by partner)
- Subscriptions and listener isolation
- Snapshot seeding and confirmation tracking
- Property: stored rank never decreases

Run tests:
    pytest tests/test_store.py -v
"""

import pytest
from hypothesis import given, settings, strategies as st

from core.event_schemas import SnapshotRecord
from core.models import Order, OrderStatus, Partner, PartnerAvailability
from core.store import OrderStateStore


class TestUpsertPolicy:
    """Conflict resolution in upsert()"""

    def test_insert_full_order(self, store, make_order):
        result = store.upsert(make_order())
        assert result.applied
        assert result.reason == "inserted"
        assert store.get("O1").status is OrderStatus.PREP

    def test_partial_update_for_unknown_order_is_rejected(self, store):
        result = store.upsert({"id": "ghost", "status": "PICKED"})
        assert not result.applied
        assert result.reason == "unknown_order"
        assert "ghost" not in store

    def test_lower_rank_is_dropped(self, store, make_order):
        store.upsert(make_order(status=OrderStatus.PICKED, partner="P1"))

        result = store.upsert({"id": "O1", "status": "PREP"})

        assert not result.applied
        assert result.reason == "stale_status"
        assert store.get("O1").status is OrderStatus.PICKED

    def test_higher_rank_advances(self, store, make_order):
        store.upsert(make_order(status=OrderStatus.PICKED, partner="P1"))

        result = store.upsert({"id": "O1", "status": OrderStatus.ON_ROUTE, "on_route_at": 42.0})

        assert result.applied
        assert result.reason == "advanced"
        assert store.get("O1").on_route_at == 42.0

    def test_cancel_overrides_any_non_terminal_status(self, store, make_order):
        store.upsert(make_order(status=OrderStatus.ON_ROUTE, partner="P1"))

        result = store.upsert({"id": "O1", "status": "CANCELLED"})

        assert result.applied
        assert store.get("O1").status is OrderStatus.CANCELLED

    def test_cancel_does_not_override_delivered(self, store, make_order):
        store.upsert(make_order(status=OrderStatus.DELIVERED, partner="P1"))

        result = store.upsert({"id": "O1", "status": "CANCELLED"})

        assert not result.applied
        assert result.reason == "terminal"
        assert store.get("O1").status is OrderStatus.DELIVERED

    def test_nothing_leaves_cancelled(self, store, make_order):
        store.upsert(make_order(status=OrderStatus.CANCELLED))
        assert store.upsert({"id": "O1", "status": "DELIVERED"}).reason == "terminal"

    def test_customer_info_is_overwritten(self, store, make_order):
        store.upsert(make_order(customer_name="Old"))

        result = store.upsert({"id": "O1", "customer_name": "New", "total_amount": 18})

        assert result.applied
        assert store.get("O1").customer_name == "New"
        assert store.get("O1").total_amount == 18.0

    def test_identical_update_is_unchanged(self, store, make_order):
        order = make_order()
        store.upsert(order)
        version = store.version

        result = store.upsert(order)

        assert not result.applied
        assert result.reason == "unchanged"
        assert store.version == version


class TestAssignment:
    """At most one partner per order"""

    def test_different_partner_is_rejected(self, store, make_order):
        store.upsert(make_order(partner="P1"))

        result = store.upsert({"id": "O1", "assigned_partner": "P2"})

        assert not result.applied
        assert result.reason == "assignment_conflict"
        assert store.get("O1").assigned_partner == "P1"

    def test_missing_partner_does_not_clear_assignment(self, store, make_order):
        store.upsert(make_order(partner="P1"))
        store.upsert({"id": "O1", "status": "PICKED", "assigned_partner": None})
        assert store.get("O1").assigned_partner == "P1"

    def test_forced_overwrite_replaces_partner(self, store, make_order):
        store.upsert(make_order(partner="P1"))

        result = store.upsert(make_order(partner="P2"), force=True)

        assert result.applied
        assert result.reason == "overwritten"
        assert store.get("O1").assigned_partner == "P2"

    def test_assignment_marks_partner_busy(self, store, make_order):
        store.upsert_partner(Partner(id="P1"))
        store.upsert(make_order())

        store.upsert({"id": "O1", "assigned_partner": "P1", "assigned_at": 10.0})

        partner = store.get_partner("P1")
        assert partner.availability is PartnerAvailability.BUSY
        assert partner.current_order == "O1"

    def test_delivery_releases_partner_and_counts(self, store, make_order):
        store.upsert_partner(Partner(id="P1"))
        store.upsert(make_order(partner="P1", total_amount=20.0))

        store.upsert({"id": "O1", "status": "DELIVERED"})

        partner = store.get_partner("P1")
        assert partner.availability is PartnerAvailability.AVAILABLE
        assert partner.current_order is None
        assert partner.total_deliveries == 1
        assert partner.total_earnings == 20.0

    def test_cancellation_releases_partner_without_counting(self, store, make_order):
        store.upsert_partner(Partner(id="P1"))
        store.upsert(make_order(status=OrderStatus.PICKED, partner="P1"))

        store.upsert({"id": "O1", "status": "CANCELLED"})

        partner = store.get_partner("P1")
        assert partner.current_order is None
        assert partner.total_deliveries == 0

    def test_partner_holding_live_order_stays_busy(self, store, make_order):
        store.upsert_partner(Partner(id="P1"))
        store.upsert(make_order(partner="P1"))

        changed = store.set_partner_availability("P1", PartnerAvailability.AVAILABLE)

        assert not changed
        assert store.get_partner("P1").is_busy()


class TestQueries:
    """Derived order lists"""

    @pytest.fixture
    def populated(self, store, make_order):
        store.upsert(make_order("a", created_at=1.0))
        store.upsert(make_order("b", partner="P1", created_at=2.0))
        store.upsert(make_order("c", status=OrderStatus.PICKED, partner="P2", created_at=3.0))
        store.upsert(make_order("d", status=OrderStatus.DELIVERED, partner="P1", created_at=4.0))
        store.upsert(make_order("e", status=OrderStatus.CANCELLED, created_at=5.0))
        return store

    def test_available_pool(self, populated):
        assert [o.id for o in populated.get_available()] == ["a"]

    def test_active(self, populated):
        assert [o.id for o in populated.get_active()] == ["b", "c"]

    def test_history(self, populated):
        assert [o.id for o in populated.get_history()] == ["d", "e"]

    def test_by_partner(self, populated):
        assert [o.id for o in populated.get_by_partner("P1")] == ["b", "d"]


class TestSubscriptions:
    """Selector subscriptions and listeners"""

    def test_selector_fires_only_on_change(self, store, make_order):
        calls = []
        initial, sub = store.subscribe(lambda s: len(s.get_available()), calls.append)
        assert initial == 0

        store.upsert(make_order("a"))
        store.upsert({"id": "a", "customer_name": "Renamed"})
        store.upsert(make_order("b", created_at=2.0))

        assert calls == [1, 2]

        sub.close()
        store.upsert(make_order("c", created_at=3.0))
        assert calls == [1, 2]
        assert not sub.active

    def test_failing_listener_does_not_block_mutation(self, store, make_order):
        def boom(_change):
            raise RuntimeError("listener failure")

        store.add_listener(boom)
        seen = []
        store.add_listener(seen.append)

        result = store.upsert(make_order())

        assert result.applied
        assert len(seen) == 1
        assert seen[0].kind == "order"


class TestSnapshotSeeding:
    """Seeding from persisted state"""

    def test_seeded_store_is_unconfirmed(self, store, make_order):
        record = SnapshotRecord(
            schema_version=1,
            orders=[make_order().to_dict()],
            partners=[Partner(id="P1").to_dict()],
            saved_at=500.0,
        )

        assert store.seed_from_snapshot(record) == 1

        assert not store.confirmed
        assert store.unconfirmed_since("O1") == 500.0
        assert store.get_partner("P1") is not None

        store.mark_confirmed()
        assert store.confirmed

    def test_to_snapshot_round_trip(self, store, make_order):
        store.upsert_partner(Partner(id="P1", name="Ana"))
        store.upsert(make_order(partner="P1", items=()))

        other = OrderStateStore()
        other.seed_from_snapshot(store.to_snapshot())

        assert other.all_orders() == store.all_orders()
        assert other.partners() == store.partners()


class TestMonotonicity:
    """Property: stored status rank never decreases"""

    @given(updates=st.lists(st.sampled_from(list(OrderStatus)), max_size=25))
    @settings(deadline=None, max_examples=100)
    def test_rank_never_decreases(self, updates):
        store = OrderStateStore()
        store.upsert(Order(id="O1", order_code="ORD1", assigned_partner="P1"))

        previous_rank = store.get("O1").status.rank
        for status in updates:
            store.upsert({"id": "O1", "status": status.value})
            rank = store.get("O1").status.rank
            assert rank >= previous_rank
            previous_rank = rank

    @given(updates=st.lists(st.sampled_from(list(OrderStatus)), min_size=1, max_size=25))
    @settings(deadline=None, max_examples=100)
    def test_terminal_status_is_final(self, updates):
        store = OrderStateStore()
        store.upsert(Order(id="O1", order_code="ORD1", assigned_partner="P1"))

        first_terminal = None
        for status in updates:
            store.upsert({"id": "O1", "status": status.value})
            if first_terminal is None and status.is_terminal():
                first_terminal = status

        if first_terminal is not None:
            assert store.get("O1").status is first_terminal
