#!/usr/bin/env python3
"""
Unit Tests for the Order Lifecycle State Machine

Run tests:
    pytest tests/test_order_fsm.py -v
"""

import pytest

from core.exceptions import AlreadyAssigned, InvalidTransition
from core.models import LifecycleState, OrderStatus
from core.order_fsm import (
    apply_assignment,
    apply_transition,
    can_transition,
    target_state,
    validate_transition,
)


class TestTransitionTable:
    """Allowed and forbidden status transitions"""

    @pytest.mark.parametrize("current,target", [
        (LifecycleState.PREP_ASSIGNED, LifecycleState.PICKED),
        (LifecycleState.PICKED, LifecycleState.ON_ROUTE),
        (LifecycleState.ON_ROUTE, LifecycleState.DELIVERED),
        (LifecycleState.PREP_UNASSIGNED, LifecycleState.CANCELLED),
        (LifecycleState.PREP_ASSIGNED, LifecycleState.CANCELLED),
        (LifecycleState.PICKED, LifecycleState.CANCELLED),
        (LifecycleState.ON_ROUTE, LifecycleState.CANCELLED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (LifecycleState.PREP_UNASSIGNED, LifecycleState.PICKED),
        (LifecycleState.PREP_UNASSIGNED, LifecycleState.DELIVERED),
        (LifecycleState.PREP_ASSIGNED, LifecycleState.ON_ROUTE),
        (LifecycleState.PICKED, LifecycleState.DELIVERED),
        (LifecycleState.ON_ROUTE, LifecycleState.PICKED),
        (LifecycleState.DELIVERED, LifecycleState.CANCELLED),
        (LifecycleState.CANCELLED, LifecycleState.PREP_UNASSIGNED),
    ])
    def test_forbidden(self, current, target):
        assert not can_transition(current, target)

    def test_assignment_is_not_a_status_transition(self):
        assert not can_transition(LifecycleState.PREP_UNASSIGNED, LifecycleState.PREP_ASSIGNED)

    def test_terminal_states_have_no_exits(self):
        for state in (LifecycleState.DELIVERED, LifecycleState.CANCELLED):
            assert state.is_terminal()
            assert not any(can_transition(state, t) for t in LifecycleState)

    def test_target_state_mapping(self):
        assert target_state(OrderStatus.PICKED) is LifecycleState.PICKED
        assert target_state(OrderStatus.CANCELLED) is LifecycleState.CANCELLED
        assert target_state(OrderStatus.PREP) is LifecycleState.PREP_UNASSIGNED


class TestApplyTransition:
    """Transitions on Order records"""

    def test_full_lifecycle_stamps_timestamps(self, make_order):
        order = apply_assignment(make_order(), "P1", now=100.0)
        assert order.lifecycle_state is LifecycleState.PREP_ASSIGNED
        assert order.assigned_at == 100.0

        order = apply_transition(order, OrderStatus.PICKED, now=200.0)
        order = apply_transition(order, OrderStatus.ON_ROUTE, now=300.0)
        order = apply_transition(order, OrderStatus.DELIVERED, now=400.0)

        assert order.status is OrderStatus.DELIVERED
        assert (order.picked_at, order.on_route_at, order.delivered_at) == (200.0, 300.0, 400.0)
        assert order.assigned_partner == "P1"

    def test_skipping_steps_raises_and_leaves_order_unchanged(self, make_order):
        order = make_order()

        with pytest.raises(InvalidTransition) as exc_info:
            apply_transition(order, OrderStatus.DELIVERED)

        assert exc_info.value.current == "PREP_UNASSIGNED"
        assert exc_info.value.target == "DELIVERED"
        assert order.status is OrderStatus.PREP
        assert order.delivered_at is None

    def test_unassigned_order_cannot_be_picked(self, make_order):
        with pytest.raises(InvalidTransition):
            validate_transition(make_order(), OrderStatus.PICKED)

    def test_cancel_from_on_route(self, make_order):
        order = make_order(status=OrderStatus.ON_ROUTE, partner="P1")
        cancelled = apply_transition(order, OrderStatus.CANCELLED, now=50.0)
        assert cancelled.status is OrderStatus.CANCELLED
        assert cancelled.cancelled_at == 50.0

    def test_delivered_cannot_be_cancelled(self, make_order):
        order = make_order(status=OrderStatus.DELIVERED, partner="P1")
        with pytest.raises(InvalidTransition):
            apply_transition(order, OrderStatus.CANCELLED)


class TestApplyAssignment:
    """Compare-and-swap assignment"""

    def test_second_assignment_raises(self, make_order):
        order = apply_assignment(make_order(), "P1")

        with pytest.raises(AlreadyAssigned) as exc_info:
            apply_assignment(order, "P2")

        assert exc_info.value.assigned_partner == "P1"
        assert exc_info.value.order_id == "O1"

    def test_order_past_prep_cannot_be_assigned(self, make_order):
        with pytest.raises(AlreadyAssigned):
            apply_assignment(make_order(status=OrderStatus.PICKED), "P1")

    def test_cancelled_order_cannot_be_assigned(self, make_order):
        with pytest.raises(AlreadyAssigned):
            apply_assignment(make_order(status=OrderStatus.CANCELLED), "P1")
