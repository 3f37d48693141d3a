#!/usr/bin/env python3
"""
Order Lifecycle State Machine

States: PREP_UNASSIGNED (initial), PREP_ASSIGNED, PICKED, ON_ROUTE,
DELIVERED (terminal), CANCELLED (terminal).

Transitions:
- PREP_UNASSIGNED → PREP_ASSIGNED  (successful assignment only)
- PREP_ASSIGNED → PICKED → ON_ROUTE → DELIVERED  (no skipping)
- any non-terminal → CANCELLED

Anything else raises InvalidTransition and leaves the order untouched.
The same rules run on the authoritative side (InMemoryBackend) and on the
client before an intent is forwarded.
"""

import logging
import time
from typing import Dict, FrozenSet, Optional

from core.exceptions import AlreadyAssigned, InvalidTransition
from core.models import STATUS_TIMESTAMP_FIELD, LifecycleState, Order, OrderStatus

logger = logging.getLogger(__name__)


# Transitions reachable through a status change request
_STATUS_TRANSITIONS: Dict[LifecycleState, FrozenSet[LifecycleState]] = {
    LifecycleState.PREP_UNASSIGNED: frozenset({LifecycleState.CANCELLED}),
    LifecycleState.PREP_ASSIGNED: frozenset({LifecycleState.PICKED, LifecycleState.CANCELLED}),
    LifecycleState.PICKED: frozenset({LifecycleState.ON_ROUTE, LifecycleState.CANCELLED}),
    LifecycleState.ON_ROUTE: frozenset({LifecycleState.DELIVERED, LifecycleState.CANCELLED}),
    LifecycleState.DELIVERED: frozenset(),
    LifecycleState.CANCELLED: frozenset(),
}


def can_transition(current: LifecycleState, target: LifecycleState) -> bool:
    """Check a status-change transition. Assignment is not a status change."""
    return target in _STATUS_TRANSITIONS[current]


def target_state(status: OrderStatus) -> LifecycleState:
    """Lifecycle state reached by a status change request to `status`."""
    if status is OrderStatus.PREP:
        # PREP is never the target of a status change
        return LifecycleState.PREP_UNASSIGNED
    return LifecycleState(status.value)


def validate_transition(order: Order, target: OrderStatus) -> None:
    """
    Raise InvalidTransition unless `order` may move to `target`.

    Args:
        order: Current order record
        target: Requested status
    """
    current = order.lifecycle_state
    if not can_transition(current, target_state(target)):
        raise InvalidTransition(order.id, current.value, target.value)


def apply_transition(order: Order, target: OrderStatus, now: Optional[float] = None) -> Order:
    """
    Return the order moved to `target`, stamping the per-status timestamp.

    Raises:
        InvalidTransition: transition not allowed from the current state
    """
    validate_transition(order, target)
    now = time.time() if now is None else now

    changes = {"status": target}
    ts_field = STATUS_TIMESTAMP_FIELD.get(target)
    if ts_field is not None:
        changes[ts_field] = now

    logger.debug(f"Order {order.id}: {order.lifecycle_state.value} -> {target.value}")
    return order.with_changes(**changes)


def apply_assignment(order: Order, partner_id: str, now: Optional[float] = None) -> Order:
    """
    Compare-and-swap assignment: succeeds only for PREP_UNASSIGNED orders.

    Raises:
        AlreadyAssigned: order has a partner or has left PREP
    """
    if order.lifecycle_state is not LifecycleState.PREP_UNASSIGNED:
        raise AlreadyAssigned(order.id, order.assigned_partner)

    now = time.time() if now is None else now
    return order.with_changes(assigned_partner=partner_id, assigned_at=now)
