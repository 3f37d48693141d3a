#!/usr/bin/env python3
"""
Sync Engine Exceptions

Error taxonomy for the order sync engine:
- NetworkError: transient, retried with bounded backoff, never mutates state
- AuthError: surfaced immediately, no retry, invalidates cached credentials
- AlreadyAssigned / InvalidTransition: business-rule conflicts, never retried
- ValidationError: malformed intent, rejected before it is forwarded
- StaleSnapshotError: local state unconfirmed past timeout, resolved by overwrite
- SnapshotSchemaError: persisted cache unusable, resolved by a full reset
"""

from typing import Optional


class OrderSyncError(Exception):
    """Base class for all sync engine errors."""


class NetworkError(OrderSyncError):
    """
    Transient transport failure (backend unreachable, timeout, reset).

    Attributes:
        attempts: Number of attempts made before the error was surfaced
    """

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class AuthError(OrderSyncError):
    """Credentials rejected by the backend or the channel."""


class BusinessRuleError(OrderSyncError):
    """Conflict with an order-lifecycle rule. Never retried automatically."""

    def __init__(self, message: str, order_id: Optional[str] = None):
        self.order_id = order_id
        super().__init__(message)


class AlreadyAssigned(BusinessRuleError):
    """
    Compare-and-swap assignment lost: the order already has a partner or
    has left PREP.
    """

    def __init__(self, order_id: str, assigned_partner: Optional[str] = None):
        self.assigned_partner = assigned_partner
        super().__init__(f"Order {order_id} is already assigned", order_id=order_id)


class InvalidTransition(BusinessRuleError):
    """Requested lifecycle transition is not allowed from the current state."""

    def __init__(self, order_id: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid transition for order {order_id}: {current} -> {target}",
            order_id=order_id,
        )


class PartnerBusy(BusinessRuleError):
    """Partner already holds an active order."""

    def __init__(self, order_id: str, partner_id: str, held_order: str):
        self.partner_id = partner_id
        self.held_order = held_order
        super().__init__(f"Partner {partner_id} already holds order {held_order}", order_id=order_id)


class PartnerUnavailable(BusinessRuleError):
    """Partner is offline and cannot take orders."""

    def __init__(self, order_id: Optional[str], partner_id: str):
        self.partner_id = partner_id
        super().__init__(f"Partner {partner_id} is not available", order_id=order_id)


class OrderNotFound(BusinessRuleError):
    """The authority has no order with this id."""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", order_id=order_id)


class ValidationError(OrderSyncError):
    """Malformed intent or payload, rejected before reaching the authority."""


class StaleSnapshotError(OrderSyncError):
    """
    Local state could not be confirmed by the authority within the timeout.

    Internal only: reconciliation resolves it by overwriting from the pull.
    """

    def __init__(self, order_id: str, unconfirmed_for_s: float):
        self.order_id = order_id
        self.unconfirmed_for_s = unconfirmed_for_s
        super().__init__(
            f"Order {order_id} unconfirmed for {unconfirmed_for_s:.1f}s"
        )


class SnapshotSchemaError(OrderSyncError):
    """Persisted snapshot is corrupt or has an unknown schema version."""
