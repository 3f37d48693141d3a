#!/usr/bin/env python3
"""
Metrics Aggregator - Dashboard figures derived from the order store

Recomputed in full on every store change; compute() is a pure function of
(orders, partners), so recomputing without a change yields identical values.

Definitions:
- total_orders: every order id ever seen by this aggregator, including orders
  later removed from the store
- active_orders: PREP_ASSIGNED, PICKED or ON_ROUTE
- total_revenue: sum of total_amount over DELIVERED orders
- average_order_value: total_revenue / total_orders (0 when no orders)
- success_rate: delivered / total * 100 (100 when no orders)
- average_delivery_time: mean minutes from created_at to delivered_at over
  delivered orders with both timestamps, else FALLBACK_DELIVERY_TIME_MIN
- partner_utilization: busy / total partners * 100 (0 when no partners)
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Set

import config
from core.event_bus import EventBus, Subscription
from core.models import LifecycleState, Order, OrderStatus, Partner
from core.store import OrderStateStore, StoreChange

logger = logging.getLogger(__name__)

TOPIC_METRICS = "metrics"

_ACTIVE_STATES = (LifecycleState.PREP_ASSIGNED, LifecycleState.PICKED, LifecycleState.ON_ROUTE)


@dataclass(frozen=True)
class DashboardMetrics:
    total_orders: int = 0
    active_orders: int = 0
    delivered_orders: int = 0
    cancelled_orders: int = 0
    available_orders: int = 0
    total_revenue: float = 0.0
    average_order_value: float = 0.0
    success_rate: float = 100.0
    average_delivery_time: float = 25.0
    partner_utilization: float = 0.0
    busy_partners: int = 0
    total_partners: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute(orders: Iterable[Order], partners: Iterable[Partner],
            fallback_delivery_time_min: float, seen_count: int = 0) -> DashboardMetrics:
    orders = list(orders)
    partners = list(partners)

    total = max(len(orders), seen_count)
    delivered = [o for o in orders if o.status is OrderStatus.DELIVERED]
    revenue = sum(o.total_amount for o in delivered)
    durations = [o.delivery_minutes for o in delivered if o.delivery_minutes is not None]
    busy = sum(1 for p in partners if p.is_busy())

    return DashboardMetrics(
        total_orders=total,
        active_orders=sum(1 for o in orders if o.lifecycle_state in _ACTIVE_STATES),
        delivered_orders=len(delivered),
        cancelled_orders=sum(1 for o in orders if o.status is OrderStatus.CANCELLED),
        available_orders=sum(1 for o in orders if o.is_available()),
        total_revenue=revenue,
        average_order_value=revenue / total if total else 0.0,
        success_rate=len(delivered) / total * 100.0 if total else 100.0,
        average_delivery_time=sum(durations) / len(durations) if durations else fallback_delivery_time_min,
        partner_utilization=busy / len(partners) * 100.0 if partners else 0.0,
        busy_partners=busy,
        total_partners=len(partners),
    )


class MetricsAggregator:
    """
    Keeps DashboardMetrics current for one store.

    Usage:
        metrics = MetricsAggregator(store)
        sub = metrics.subscribe(lambda m: print(m.success_rate))
    """

    def __init__(self, store: OrderStateStore, fallback_delivery_time_min: Optional[float] = None):
        self.store = store
        self.fallback_delivery_time_min = (
            fallback_delivery_time_min if fallback_delivery_time_min is not None
            else config.get_config("FALLBACK_DELIVERY_TIME_MIN")
        )
        self.bus = EventBus("metrics")
        self.recompute_count = 0
        self._seen_ids: Set[str] = set()
        self._current = self._compute()
        self._store_sub: Optional[Subscription] = store.add_listener(self._on_store_change)

    @property
    def current(self) -> DashboardMetrics:
        return self._current

    def _compute(self) -> DashboardMetrics:
        orders = self.store.all_orders()
        self._seen_ids.update(o.id for o in orders)
        return compute(orders, self.store.partners(), self.fallback_delivery_time_min,
                       seen_count=len(self._seen_ids))

    def recompute(self) -> DashboardMetrics:
        """Recompute from the store; subscribers hear only about changed values."""
        self.recompute_count += 1
        metrics = self._compute()
        if metrics != self._current:
            self._current = metrics
            self.bus.publish(TOPIC_METRICS, metrics)
        return metrics

    def _on_store_change(self, _change: StoreChange) -> None:
        self.recompute()

    def subscribe(self, on_change: Callable[[DashboardMetrics], None]) -> Subscription:
        return self.bus.subscribe(TOPIC_METRICS, on_change)

    def close(self) -> None:
        if self._store_sub is not None:
            self._store_sub.close()
            self._store_sub = None
