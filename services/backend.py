#!/usr/bin/env python3
"""
Backend contract and in-memory authority

OrderBackend is everything the sync engine needs from the authoritative
backend: a full pull, the compare-and-swap assignment endpoint and the
idempotent status mutation endpoints. InMemoryBackend implements it on top
of the same order state machine the client validates against, and
broadcasts the resulting events through a ChannelHub.

InMemoryBackend is a reference collaborator for tests and the demo CLI.
Fault injection:
- fail_next(n): next n calls raise NetworkError
- revoke(credentials): later calls with those credentials raise AuthError
- latency_s: artificial delay before each call is processed
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from core.event_schemas import (
    AssignmentIntent,
    AssignmentResponse,
    ChannelEvent,
    EventType,
)
from core.exceptions import (
    AuthError, BusinessRuleError, NetworkError, OrderNotFound, PartnerBusy,
    PartnerUnavailable,
)
from core.models import LineItem, Order, OrderStatus, Partner, PartnerAvailability
from core.order_fsm import apply_assignment, apply_transition
from services.sync_channel import ChannelHub

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PullResult:
    """Authoritative snapshot returned by a full pull."""
    orders: Tuple[Order, ...]
    partners: Tuple[Partner, ...] = ()
    pulled_at: float = field(default_factory=time.time)


class OrderBackend(Protocol):
    """Contract of the authoritative backend (all calls may raise NetworkError)."""

    async def pull_orders(self) -> PullResult:
        ...

    async def request_assignment(self, intent: AssignmentIntent, credentials: str) -> AssignmentResponse:
        ...

    async def transition_status(self, order_id: str, target: OrderStatus, credentials: str,
                                partner_id: Optional[str] = None) -> Order:
        ...

    async def cancel_order(self, order_id: str, reason: str, credentials: str) -> Order:
        ...

    async def set_partner_availability(self, partner_id: str, availability: PartnerAvailability,
                                       credentials: str) -> Partner:
        ...


class Credentials:
    """
    Credentials held by one client.

    Invalidated on the first AuthError; later calls fail fast until new
    credentials are set.
    """

    def __init__(self, value: Optional[str] = None):
        self._value = value

    @property
    def valid(self) -> bool:
        return self._value is not None

    def require(self) -> str:
        if self._value is None:
            raise AuthError("No valid credentials")
        return self._value

    def invalidate(self) -> None:
        if self._value is not None:
            logger.warning("Credentials invalidated after authentication failure")
        self._value = None

    def set(self, value: str) -> None:
        self._value = value

    @property
    def value(self) -> Optional[str]:
        return self._value


class InMemoryBackend:
    """
    Authoritative order backend held in process memory.

    Every mutation bumps the order's seq and is broadcast on `hub`.
    """

    def __init__(self, credentials: Optional[Set[str]] = None, hub: Optional[ChannelHub] = None,
                 latency_s: float = 0.0):
        self._orders: Dict[str, Order] = {}
        self._partners: Dict[str, Partner] = {}
        self._seq: Dict[str, int] = {}
        self._tokens: Dict[str, AssignmentResponse] = {}
        self._credentials: Set[str] = set(credentials or ())
        self._fail_next = 0
        self._code_counter = itertools.count(100001)
        self.latency_s = latency_s
        self.hub = hub or ChannelHub(authenticate=self.check_credentials)
        self.calls: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Fault injection / administration
    # ------------------------------------------------------------------

    def fail_next(self, count: int = 1) -> None:
        self._fail_next += count

    def grant(self, credentials: str) -> None:
        self._credentials.add(credentials)

    def revoke(self, credentials: str) -> None:
        self._credentials.discard(credentials)

    def check_credentials(self, credentials: Optional[str]) -> None:
        if not credentials or credentials not in self._credentials:
            raise AuthError("Credentials rejected")

    async def _enter(self, operation: str, credentials: Optional[str] = None, auth: bool = True) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        await asyncio.sleep(self.latency_s)
        if self._fail_next > 0:
            self._fail_next -= 1
            raise NetworkError(f"{operation}: backend unreachable")
        if auth:
            self.check_credentials(credentials)

    # ------------------------------------------------------------------
    # Seeding (restaurant/partner registration is outside the engine)
    # ------------------------------------------------------------------

    def register_partner(self, partner_id: str, name: str = "", contact: str = "") -> Partner:
        partner = Partner(id=partner_id, name=name, contact=contact)
        self._partners[partner_id] = partner
        return partner

    def create_order(self, order_id: str, customer_name: str = "", items: Optional[List[Dict[str, Any]]] = None,
                     customer_phone: str = "", customer_address: str = "", prep_time_min: Optional[int] = None,
                     special_instructions: str = "", now: Optional[float] = None) -> Order:
        """Create a PREP order and broadcast order_created."""
        line_items = tuple(LineItem.from_dict(i) for i in (items or []))
        order = Order(
            id=order_id,
            order_code=f"ORD{next(self._code_counter)}",
            customer_name=customer_name,
            customer_phone=customer_phone,
            customer_address=customer_address,
            items=line_items,
            total_amount=sum(i.subtotal for i in line_items),
            prep_time_min=prep_time_min,
            special_instructions=special_instructions,
            created_at=time.time() if now is None else now,
        )
        self._orders[order_id] = order
        self._emit(EventType.ORDER_CREATED, order)
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def get_partner(self, partner_id: str) -> Optional[Partner]:
        return self._partners.get(partner_id)

    # ------------------------------------------------------------------
    # OrderBackend
    # ------------------------------------------------------------------

    async def pull_orders(self) -> PullResult:
        await self._enter("pull_orders", auth=False)
        return PullResult(
            orders=tuple(self._orders.values()),
            partners=tuple(self._partners.values()),
        )

    async def request_assignment(self, intent: AssignmentIntent, credentials: str) -> AssignmentResponse:
        """
        Compare-and-swap assignment, idempotent on intent.token.

        Raises:
            OrderNotFound, AlreadyAssigned, PartnerBusy, PartnerUnavailable
        """
        await self._enter("request_assignment", credentials)

        replay = self._tokens.get(intent.token)
        if replay is not None:
            return replay.model_copy(update={"replayed": True})

        order = self._require(intent.order_id)
        partner = self._partners.get(intent.partner_id)
        if partner is not None:
            if partner.availability is PartnerAvailability.OFFLINE:
                raise PartnerUnavailable(intent.order_id, intent.partner_id)
            held = self._active_order_of(partner)
            if held is not None:
                raise PartnerBusy(intent.order_id, intent.partner_id, held.id)

        assigned = apply_assignment(order, intent.partner_id)
        self._orders[order.id] = assigned
        if partner is not None:
            self._partners[partner.id] = partner.with_changes(
                availability=PartnerAvailability.BUSY, current_order=order.id
            )

        response = AssignmentResponse(
            order_id=order.id,
            partner_id=intent.partner_id,
            token=intent.token,
            assigned_at=assigned.assigned_at,
        )
        self._tokens[intent.token] = response
        self._emit(EventType.ORDER_ASSIGNED, assigned, intent_token=intent.token)
        return response

    async def transition_status(self, order_id: str, target: OrderStatus, credentials: str,
                                partner_id: Optional[str] = None) -> Order:
        """
        Move an order to `target`. Repeating a transition already applied
        returns the current order without a new event.

        Raises:
            OrderNotFound, InvalidTransition, BusinessRuleError (wrong partner)
        """
        await self._enter("transition_status", credentials)
        order = self._require(order_id)

        if order.status is target:
            return order
        if partner_id is not None and order.assigned_partner != partner_id:
            raise BusinessRuleError(f"Order {order_id} is not assigned to {partner_id}", order_id=order_id)

        return self._commit_transition(order, target)

    async def cancel_order(self, order_id: str, reason: str, credentials: str) -> Order:
        await self._enter("cancel_order", credentials)
        order = self._require(order_id)
        if order.status is OrderStatus.CANCELLED:
            return order
        logger.info(f"Cancelling order {order_id}: {reason or 'no reason given'}")
        return self._commit_transition(order, OrderStatus.CANCELLED)

    async def set_partner_availability(self, partner_id: str, availability: PartnerAvailability,
                                       credentials: str) -> Partner:
        """
        Take a partner online or offline. Setting the current value again
        returns the partner without a new event.

        Raises:
            BusinessRuleError: unknown partner, or BUSY requested (it is derived)
            PartnerBusy: going offline while holding an active order
        """
        await self._enter("set_partner_availability", credentials)
        partner = self._partners.get(partner_id)
        if partner is None:
            raise BusinessRuleError(f"Partner {partner_id} not found")
        if availability is PartnerAvailability.BUSY:
            raise BusinessRuleError("Busy is set by assignment, not requested")

        held = self._active_order_of(partner)
        if held is not None:
            if availability is PartnerAvailability.OFFLINE:
                raise PartnerBusy(held.id, partner_id, held.id)
            return partner
        if partner.availability is availability:
            return partner

        partner = partner.with_changes(availability=availability, current_order=None)
        self._partners[partner_id] = partner
        logger.info(f"Partner {partner_id} is now {availability.value}")
        self.hub.broadcast(ChannelEvent(
            event_type=EventType.PARTNER_AVAILABLE,
            partner_id=partner_id,
            availability=availability,
        ).model_dump(mode="json"))
        return partner

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _active_order_of(self, partner: Partner) -> Optional[Order]:
        held = self._orders.get(partner.current_order) if partner.current_order else None
        if held is None or held.is_terminal():
            return None
        return held

    def _require(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def _commit_transition(self, order: Order, target: OrderStatus) -> Order:
        updated = apply_transition(order, target)
        self._orders[order.id] = updated

        if updated.is_terminal():
            self._release_partner(updated)

        event_type = EventType.ORDER_DELIVERED if target is OrderStatus.DELIVERED else EventType.ORDER_STATUS_CHANGED
        self._emit(event_type, updated)
        if updated.is_terminal() and updated.assigned_partner in self._partners:
            self.hub.broadcast(ChannelEvent(
                event_type=EventType.PARTNER_AVAILABLE,
                partner_id=updated.assigned_partner,
            ).model_dump(mode="json"))
        return updated

    def _release_partner(self, order: Order) -> None:
        partner = self._partners.get(order.assigned_partner) if order.assigned_partner else None
        if partner is None:
            return
        changes: Dict[str, Any] = {"availability": PartnerAvailability.AVAILABLE, "current_order": None}
        if order.status is OrderStatus.DELIVERED:
            changes["total_deliveries"] = partner.total_deliveries + 1
            changes["total_earnings"] = partner.total_earnings + order.total_amount
        self._partners[partner.id] = partner.with_changes(**changes)

    def _emit(self, event_type: EventType, order: Order, intent_token: Optional[str] = None) -> None:
        seq = self._seq.get(order.id, 0) + 1
        self._seq[order.id] = seq
        event = ChannelEvent(
            event_type=event_type,
            order_id=order.id,
            status=order.status,
            partner_id=order.assigned_partner,
            intent_token=intent_token,
            order=order.to_dict(),
            seq=seq,
        )
        self.hub.broadcast(event.model_dump(mode="json"))

    def replay_last(self, order_id: str, event_type: EventType) -> None:
        """Re-broadcast the current state of an order as `event_type` (redelivery)."""
        order = self._require(order_id)
        self.hub.broadcast(ChannelEvent(
            event_type=event_type,
            order_id=order.id,
            status=order.status,
            partner_id=order.assigned_partner,
            order=order.to_dict(),
            seq=self._seq.get(order.id, 0),
        ).model_dump(mode="json"))
