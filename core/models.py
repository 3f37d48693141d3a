#!/usr/bin/env python3
"""
Order and Partner records

Immutable snapshots of the two entities the sync engine tracks. Every
mutation produces a new record (dataclasses.replace) so consumers holding
a reference never observe a half-applied update.

Status progression: PREP → PICKED → ON_ROUTE → DELIVERED, CANCELLED from
any non-terminal status. The finer lifecycle state splits PREP by whether
a partner is assigned.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class OrderStatus(Enum):
    """
    Order status as stored by the backend.

    Terminal statuses: DELIVERED, CANCELLED
    """
    PREP = "PREP"
    PICKED = "PICKED"
    ON_ROUTE = "ON_ROUTE"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @property
    def rank(self) -> int:
        """Progression rank. CANCELLED sorts above everything (terminal override)."""
        return _STATUS_RANK[self]

    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


_STATUS_RANK = {
    OrderStatus.PREP: 0,
    OrderStatus.PICKED: 1,
    OrderStatus.ON_ROUTE: 2,
    OrderStatus.DELIVERED: 3,
    OrderStatus.CANCELLED: 4,
}


class LifecycleState(Enum):
    """Lifecycle state of an order, derived from (status, assigned_partner)."""
    PREP_UNASSIGNED = "PREP_UNASSIGNED"
    PREP_ASSIGNED = "PREP_ASSIGNED"
    PICKED = "PICKED"
    ON_ROUTE = "ON_ROUTE"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    def is_terminal(self) -> bool:
        return self in (LifecycleState.DELIVERED, LifecycleState.CANCELLED)

    @property
    def status(self) -> OrderStatus:
        if self in (LifecycleState.PREP_UNASSIGNED, LifecycleState.PREP_ASSIGNED):
            return OrderStatus.PREP
        return OrderStatus(self.value)


class PartnerAvailability(Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


# Per-status timestamp attribute, set when the order enters that status
STATUS_TIMESTAMP_FIELD = {
    OrderStatus.PICKED: "picked_at",
    OrderStatus.ON_ROUTE: "on_route_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

TIMESTAMP_FIELDS = ("assigned_at", "picked_at", "on_route_at", "delivered_at", "cancelled_at")


@dataclass(frozen=True)
class LineItem:
    name: str
    quantity: int
    unit_price: float

    @property
    def subtotal(self) -> float:
        return self.quantity * self.unit_price

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "quantity": self.quantity, "unit_price": self.unit_price}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LineItem':
        return cls(
            name=data["name"],
            quantity=int(data["quantity"]),
            unit_price=float(data["unit_price"]),
        )


@dataclass(frozen=True)
class Order:
    """
    Delivery order record.

    Customer fields and amounts are immutable after creation; status,
    assignment and per-transition timestamps change only through
    confirmed transitions.
    """

    # Identity
    id: str
    order_code: str

    # Lifecycle
    status: OrderStatus = OrderStatus.PREP
    assigned_partner: Optional[str] = None

    # Customer
    customer_name: str = ""
    customer_phone: str = ""
    customer_address: str = ""

    # Contents
    items: Tuple[LineItem, ...] = ()
    total_amount: float = 0.0
    prep_time_min: Optional[int] = None
    special_instructions: str = ""

    # Timing
    created_at: float = field(default_factory=time.time)
    assigned_at: Optional[float] = None
    picked_at: Optional[float] = None
    on_route_at: Optional[float] = None
    delivered_at: Optional[float] = None
    cancelled_at: Optional[float] = None

    @property
    def lifecycle_state(self) -> LifecycleState:
        if self.status is OrderStatus.PREP:
            if self.assigned_partner:
                return LifecycleState.PREP_ASSIGNED
            return LifecycleState.PREP_UNASSIGNED
        return LifecycleState(self.status.value)

    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    def is_available(self) -> bool:
        """In the available pool: PREP and no partner."""
        return self.status is OrderStatus.PREP and not self.assigned_partner

    @property
    def delivery_minutes(self) -> Optional[float]:
        if self.delivered_at is None or self.created_at is None:
            return None
        return (self.delivered_at - self.created_at) / 60.0

    def with_changes(self, **changes: Any) -> 'Order':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_code": self.order_code,
            "status": self.status.value,
            "assigned_partner": self.assigned_partner,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "customer_address": self.customer_address,
            "items": [item.to_dict() for item in self.items],
            "total_amount": self.total_amount,
            "prep_time_min": self.prep_time_min,
            "special_instructions": self.special_instructions,
            "created_at": self.created_at,
            "assigned_at": self.assigned_at,
            "picked_at": self.picked_at,
            "on_route_at": self.on_route_at,
            "delivered_at": self.delivered_at,
            "cancelled_at": self.cancelled_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Order':
        return cls(
            id=data["id"],
            order_code=data.get("order_code") or data["id"],
            status=OrderStatus(data.get("status", "PREP")),
            assigned_partner=data.get("assigned_partner"),
            customer_name=data.get("customer_name", ""),
            customer_phone=data.get("customer_phone", ""),
            customer_address=data.get("customer_address", ""),
            items=tuple(LineItem.from_dict(i) for i in data.get("items", [])),
            total_amount=float(data.get("total_amount", 0.0)),
            prep_time_min=data.get("prep_time_min"),
            special_instructions=data.get("special_instructions", ""),
            created_at=data.get("created_at") or time.time(),
            assigned_at=data.get("assigned_at"),
            picked_at=data.get("picked_at"),
            on_route_at=data.get("on_route_at"),
            delivered_at=data.get("delivered_at"),
            cancelled_at=data.get("cancelled_at"),
        )


@dataclass(frozen=True)
class Partner:
    """
    Delivery partner as seen by the engine.

    Registration data (name, contact) comes from an external collaborator;
    the engine only writes availability, current_order and the counters.
    """
    id: str
    name: str = ""
    contact: str = ""
    availability: PartnerAvailability = PartnerAvailability.AVAILABLE
    current_order: Optional[str] = None
    total_deliveries: int = 0
    total_earnings: float = 0.0

    def is_busy(self) -> bool:
        return self.availability is PartnerAvailability.BUSY

    def with_changes(self, **changes: Any) -> 'Partner':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "contact": self.contact,
            "availability": self.availability.value,
            "current_order": self.current_order,
            "total_deliveries": self.total_deliveries,
            "total_earnings": self.total_earnings,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Partner':
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            contact=data.get("contact", ""),
            availability=PartnerAvailability(data.get("availability", "available")),
            current_order=data.get("current_order"),
            total_deliveries=int(data.get("total_deliveries", 0)),
            total_earnings=float(data.get("total_earnings", 0.0)),
        )
