#!/usr/bin/env python3
"""
OrderStateStore - Canonical in-memory order state for one client process

Single source of truth for orders and partners in this process. All writes
go through upsert()/upsert_partner()/remove(), which are plain synchronous
methods: on the asyncio loop they never suspend, so two updates to the same
order can never interleave.

Conflict policy for upsert():
- Every status has a progression rank (PREP=0 < PICKED < ON_ROUTE < DELIVERED).
- An update is applied only if its rank is >= the stored rank.
- CANCELLED is a terminal override: applied unless the order is DELIVERED.
- An existing assignment is never replaced by a different partner, except
  through a forced (authoritative) overwrite.
- Customer info and amounts are overwritten whenever provided.

Every applied mutation is published as a StoreChange on the store's bus
(metrics, write-through persistence and consumer subscriptions listen there).
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import config
from core.event_bus import EventBus, Subscription
from core.event_schemas import SnapshotRecord
from core.models import (
    TIMESTAMP_FIELDS,
    LineItem,
    Order,
    OrderStatus,
    Partner,
    PartnerAvailability,
)

logger = logging.getLogger(__name__)

TOPIC_CHANGED = "store.changed"

# Fields an unknown order must carry before it can be inserted
_REQUIRED_FOR_INSERT = ("id", "order_code", "status")

_ORDER_FIELDS = (
    "order_code", "customer_name", "customer_phone", "customer_address",
    "items", "total_amount", "prep_time_min", "special_instructions", "created_at",
)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of an upsert. `order` is the stored record after the call."""
    applied: bool
    order: Optional[Order]
    reason: str
    previous: Optional[Order] = None


@dataclass(frozen=True)
class StoreChange:
    """
    Published after every applied mutation.

    kind: "order" | "partner" | "remove" | "seed" | "confirmed"
    """
    kind: str
    key: Optional[str] = None
    previous: Any = None
    current: Any = None
    version: int = 0


OrderUpdate = Union[Order, Mapping[str, Any]]


class OrderStateStore:
    """
    Canonical order/partner state with rank-based conflict resolution.
    """

    def __init__(self, bus: Optional[EventBus] = None, clock: Callable[[], float] = time.time):
        self.bus = bus or EventBus("store")
        self._clock = clock
        self._orders: Dict[str, Order] = {}
        self._partners: Dict[str, Partner] = {}
        self._unconfirmed_since: Dict[str, float] = {}
        self._confirmed = True
        self._version = 0

    # ========================================================================
    # Queries
    # ========================================================================

    def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def all_orders(self) -> List[Order]:
        return sorted(self._orders.values(), key=lambda o: (o.created_at, o.id))

    def get_available(self) -> List[Order]:
        """Orders in PREP with no assigned partner."""
        return [o for o in self.all_orders() if o.is_available()]

    def get_active(self) -> List[Order]:
        """Assigned orders in PREP, PICKED or ON_ROUTE."""
        return [
            o for o in self.all_orders()
            if o.assigned_partner and not o.is_terminal()
        ]

    def get_by_partner(self, partner_id: str) -> List[Order]:
        return [o for o in self.all_orders() if o.assigned_partner == partner_id]

    def get_history(self) -> List[Order]:
        """Archived orders: DELIVERED or CANCELLED."""
        return [o for o in self.all_orders() if o.is_terminal()]

    def get_partner(self, partner_id: str) -> Optional[Partner]:
        return self._partners.get(partner_id)

    def partners(self) -> List[Partner]:
        return sorted(self._partners.values(), key=lambda p: p.id)

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    @property
    def version(self) -> int:
        """Monotonic mutation counter."""
        return self._version

    # ========================================================================
    # Confirmation tracking
    # ========================================================================

    @property
    def confirmed(self) -> bool:
        """False while the store holds seeded state no pull has confirmed yet."""
        return self._confirmed

    def mark_confirmed(self) -> None:
        if not self._confirmed:
            self._confirmed = True
            logger.info("Order store confirmed by authoritative pull")
            self._publish("confirmed")

    def unconfirmed_since(self, order_id: str) -> Optional[float]:
        return self._unconfirmed_since.get(order_id)

    def mark_unconfirmed(self, order_id: str, since: Optional[float] = None) -> None:
        """Start the unconfirmed clock for an order (kept if already running)."""
        if order_id in self._orders and order_id not in self._unconfirmed_since:
            self._unconfirmed_since[order_id] = self._clock() if since is None else since

    def mark_order_confirmed(self, order_id: str) -> None:
        self._unconfirmed_since.pop(order_id, None)

    def unconfirmed_ids(self) -> List[str]:
        return sorted(self._unconfirmed_since)

    # ========================================================================
    # Mutation
    # ========================================================================

    def upsert(self, update: OrderUpdate, force: bool = False) -> UpsertResult:
        """
        Apply a full or partial order update under the rank policy.

        Args:
            update: Order record, or mapping with "id" plus any changed fields
            force: Authoritative overwrite, bypasses rank and assignment checks

        Returns:
            UpsertResult describing whether and why the update was applied
        """
        fields = update.to_dict() if isinstance(update, Order) else dict(update)
        order_id = fields.get("id")
        if not order_id:
            return UpsertResult(False, None, "missing_id")

        current = self._orders.get(order_id)
        if current is None:
            return self._insert(fields)

        if force:
            candidate = self._overwrite(current, fields)
            reason = "overwritten"
        else:
            candidate, reason = self._merge(current, fields)
            if candidate is None:
                logger.debug(f"Upsert rejected for {order_id}: {reason}")
                return UpsertResult(False, current, reason, previous=current)

        if candidate == current:
            return UpsertResult(False, current, "unchanged", previous=current)

        self._orders[order_id] = candidate
        self._sync_partner(current, candidate)
        self._publish("order", order_id, current, candidate)
        return UpsertResult(True, candidate, reason, previous=current)

    def _insert(self, fields: Dict[str, Any]) -> UpsertResult:
        missing = [f for f in _REQUIRED_FOR_INSERT if fields.get(f) is None]
        if missing:
            return UpsertResult(False, None, "unknown_order")

        order = Order.from_dict(_plain(fields))
        self._orders[order.id] = order
        self._sync_partner(None, order)
        self._publish("order", order.id, None, order)
        return UpsertResult(True, order, "inserted")

    def _merge(self, current: Order, fields: Dict[str, Any]) -> Tuple[Optional[Order], str]:
        incoming = _status(fields.get("status", current.status))

        if current.is_terminal():
            if incoming is current.status:
                return self._apply_fields(current, fields, incoming), "same_rank"
            return None, "terminal"

        if incoming is not OrderStatus.CANCELLED and incoming.rank < current.status.rank:
            return None, "stale_status"

        partner = fields.get("assigned_partner")
        if partner and current.assigned_partner and partner != current.assigned_partner:
            return None, "assignment_conflict"

        reason = "advanced" if incoming.rank > current.status.rank else "same_rank"
        return self._apply_fields(current, fields, incoming), reason

    def _apply_fields(self, current: Order, fields: Dict[str, Any], status: OrderStatus) -> Order:
        changes: Dict[str, Any] = {"status": status}

        # Assignment only ever goes from unset to set here
        if fields.get("assigned_partner") and not current.assigned_partner:
            changes["assigned_partner"] = fields["assigned_partner"]

        # First write wins for per-transition timestamps
        for ts_field in TIMESTAMP_FIELDS:
            if getattr(current, ts_field) is None and fields.get(ts_field) is not None:
                changes[ts_field] = fields[ts_field]

        changes.update(_immutable_changes(fields))
        return current.with_changes(**changes)

    def _overwrite(self, current: Order, fields: Dict[str, Any]) -> Order:
        merged = current.to_dict()
        merged.update(_plain(fields))
        return Order.from_dict(merged)

    def remove(self, order_id: str) -> Optional[Order]:
        """Drop an order the authority does not know (reconciliation only)."""
        order = self._orders.pop(order_id, None)
        self._unconfirmed_since.pop(order_id, None)
        if order is not None:
            self._release_partner(order, delivered=False)
            self._publish("remove", order_id, order, None)
        return order

    def upsert_partner(self, partner: Partner) -> bool:
        """Insert or replace a partner record. Returns True if anything changed."""
        previous = self._partners.get(partner.id)
        if previous == partner:
            return False
        self._partners[partner.id] = partner
        self._publish("partner", partner.id, previous, partner)
        return True

    def set_partner_availability(self, partner_id: str, availability: PartnerAvailability) -> bool:
        partner = self._partners.get(partner_id)
        if partner is None:
            return self.upsert_partner(Partner(id=partner_id, availability=availability))
        changes: Dict[str, Any] = {"availability": availability}
        if availability is not PartnerAvailability.BUSY:
            # A partner holding a live order stays busy
            held = self._orders.get(partner.current_order) if partner.current_order else None
            if held is not None and not held.is_terminal() and held.assigned_partner == partner_id:
                return False
            changes["current_order"] = None
        return self.upsert_partner(partner.with_changes(**changes))

    # ========================================================================
    # Partner bookkeeping
    # ========================================================================

    def _sync_partner(self, previous: Optional[Order], order: Order) -> None:
        """Keep partner.current_order/availability consistent with the order."""
        prev_partner = previous.assigned_partner if previous else None

        if prev_partner and prev_partner != order.assigned_partner:
            self._release_partner(previous, delivered=False)

        if not order.assigned_partner:
            return

        if order.is_terminal():
            just_delivered = (
                order.status is OrderStatus.DELIVERED
                and (previous is None or previous.status is not OrderStatus.DELIVERED)
            )
            self._release_partner(order, delivered=just_delivered)
            return

        partner = self._partners.get(order.assigned_partner)
        if partner is None:
            return
        if partner.current_order != order.id or not partner.is_busy():
            self.upsert_partner(partner.with_changes(
                availability=PartnerAvailability.BUSY,
                current_order=order.id,
            ))

    def _release_partner(self, order: Order, delivered: bool) -> None:
        partner = self._partners.get(order.assigned_partner) if order.assigned_partner else None
        if partner is None:
            return
        changes: Dict[str, Any] = {}
        if partner.current_order == order.id:
            changes["current_order"] = None
            changes["availability"] = PartnerAvailability.AVAILABLE
        if delivered:
            changes["total_deliveries"] = partner.total_deliveries + 1
            changes["total_earnings"] = partner.total_earnings + order.total_amount
        if changes:
            self.upsert_partner(partner.with_changes(**changes))

    # ========================================================================
    # Subscriptions
    # ========================================================================

    def add_listener(self, fn: Callable[[StoreChange], None]) -> Subscription:
        """Receive every StoreChange."""
        return self.bus.subscribe(TOPIC_CHANGED, fn)

    def subscribe(
        self,
        selector: Callable[['OrderStateStore'], Any],
        on_change: Callable[[Any], None],
    ) -> Tuple[Any, Subscription]:
        """
        Observe a derived value.

        Returns:
            (initial value, Subscription). on_change fires only when the
            selected value differs from the last one delivered.
        """
        last = [selector(self)]

        def _on_store_change(_change: StoreChange) -> None:
            value = selector(self)
            if value != last[0]:
                last[0] = value
                on_change(value)

        return last[0], self.add_listener(_on_store_change)

    def _publish(self, kind: str, key: Optional[str] = None, previous: Any = None, current: Any = None) -> None:
        self._version += 1
        self.bus.publish(TOPIC_CHANGED, StoreChange(kind, key, previous, current, self._version))

    # ========================================================================
    # Snapshot
    # ========================================================================

    def to_snapshot(self) -> SnapshotRecord:
        return SnapshotRecord(
            schema_version=config.SNAPSHOT_SCHEMA_VERSION,
            orders=[o.to_dict() for o in self.all_orders()],
            partners=[p.to_dict() for p in self.partners()],
            saved_at=self._clock(),
        )

    def seed_from_snapshot(self, record: SnapshotRecord) -> int:
        """
        Replace the store contents with a persisted snapshot.

        Seeded orders are unconfirmed since the snapshot was saved; only an
        authoritative pull can confirm them.

        Returns:
            Number of orders seeded
        """
        self._orders = {o.id: o for o in (Order.from_dict(d) for d in record.orders)}
        self._partners = {p.id: p for p in (Partner.from_dict(d) for d in record.partners)}
        self._unconfirmed_since = {order_id: record.saved_at for order_id in self._orders}
        self._confirmed = False

        logger.info(
            f"Order store seeded from snapshot: {len(self._orders)} orders, "
            f"{len(self._partners)} partners (saved_at={record.saved_at:.0f})"
        )
        self._publish("seed")
        return len(self._orders)


def _status(value: Any) -> OrderStatus:
    return value if isinstance(value, OrderStatus) else OrderStatus(value)


def _plain(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize enum/item values so Order.from_dict() can read them."""
    out = dict(fields)
    if isinstance(out.get("status"), OrderStatus):
        out["status"] = out["status"].value
    if "items" in out:
        out["items"] = [i if isinstance(i, dict) else i.to_dict() for i in out["items"]]
    return out


def _immutable_changes(fields: Dict[str, Any]) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    for name in _ORDER_FIELDS:
        if name not in fields or fields[name] is None:
            continue
        value = fields[name]
        if name == "items":
            value = tuple(i if isinstance(i, LineItem) else LineItem.from_dict(i) for i in value)
        elif name == "total_amount":
            value = float(value)
        changes[name] = value
    return changes
