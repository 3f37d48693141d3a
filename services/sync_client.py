#!/usr/bin/env python3
"""
Order Sync Client - One client's wiring of store, channel and backend

Builds the component graph explicitly (no globals):

    backend ──pull──► ReconciliationEngine ──upsert──► OrderStateStore
    channel ──events─┘        │                          │
                              └─ order_assigned ─► AssignmentCoordinator
    OverlayRegistry (pending intents) ◄── store changes ─┤
    MetricsAggregator, SnapshotStore (write-through) ◄───┘

Consumers read through subscribe()/effective_view(), which lay pending
overlays over the confirmed store state. They never write to the store.

Usage:
    async with OrderSyncClient(backend, credentials="secret") as client:
        initial, sub = client.subscribe(lambda v: len(v.get_available()), print)
        result = await client.request_assignment("ord_1", "partner_7")
"""

import logging
import time
from typing import Any, Callable, List, Optional, Tuple

import config
from core.event_bus import Subscription
from core.exceptions import AuthError, BusinessRuleError, NetworkError, OrderNotFound
from core.logger_factory import AUDIT_LOG, log_event
from core.models import Order, OrderStatus, Partner, PartnerAvailability
from core.order_fsm import validate_transition
from core.retry import with_backoff
from core.store import OrderStateStore
from core.trace_context import Trace, new_intent_token, set_client_id
from persistence.snapshot_store import SnapshotStore
from services.assignment import AssignmentCoordinator, AssignmentResult
from services.backend import Credentials, InMemoryBackend, OrderBackend
from services.metrics import DashboardMetrics, MetricsAggregator
from services.overlays import OverlayRegistry
from services.reconciler import ReconciliationEngine
from services.sync_channel import ChannelHub, SyncChannel

logger = logging.getLogger(__name__)


class EffectiveView:
    """Read-only view: confirmed store state with pending overlays applied."""

    def __init__(self, store: OrderStateStore, overlays: OverlayRegistry, metrics: MetricsAggregator):
        self._store = store
        self._overlays = overlays
        self._metrics = metrics

    def get(self, order_id: str) -> Optional[Order]:
        return self._overlays.apply(self._store.get(order_id))

    def all_orders(self) -> List[Order]:
        return [self._overlays.apply(o) for o in self._store.all_orders()]

    def get_available(self) -> List[Order]:
        return [o for o in self.all_orders() if o.is_available()]

    def get_active(self) -> List[Order]:
        return [o for o in self.all_orders() if o.assigned_partner and not o.is_terminal()]

    def get_by_partner(self, partner_id: str) -> List[Order]:
        return [o for o in self.all_orders() if o.assigned_partner == partner_id]

    def get_history(self) -> List[Order]:
        return [o for o in self.all_orders() if o.is_terminal()]

    def get_partner(self, partner_id: str) -> Optional[Partner]:
        return self._store.get_partner(partner_id)

    def is_pending(self, order_id: str) -> bool:
        return bool(self._overlays.pending(order_id))

    @property
    def metrics(self) -> DashboardMetrics:
        return self._metrics.current

    @property
    def confirmed(self) -> bool:
        return self._store.confirmed


class OrderSyncClient:
    """
    Facade over one client process's sync engine.
    """

    def __init__(
        self,
        backend: OrderBackend,
        credentials: Optional[str] = None,
        hub: Optional[ChannelHub] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        client_id: Optional[str] = None,
        persist: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id or config.CLIENT_ID
        self.backend = backend
        self.credentials = Credentials(credentials)

        if hub is None and isinstance(backend, InMemoryBackend):
            hub = backend.hub
        self.channel = SyncChannel(hub or ChannelHub(), name=self.client_id)

        self.store = OrderStateStore(clock=clock)
        self.overlays = OverlayRegistry()
        self.overlays.attach(self.store)
        self.coordinator = AssignmentCoordinator(self.store, backend, self.overlays, self.credentials)
        self.reconciler = ReconciliationEngine(
            self.store,
            backend,
            channel=self.channel,
            on_assignment=self.coordinator.apply_confirmation,
            clock=clock,
        )
        self.metrics = MetricsAggregator(self.store)

        if persist is None:
            persist = config.get_config("PERSIST_SNAPSHOTS")
        if persist and snapshot_store is None:
            snapshot_store = SnapshotStore()
        self.snapshots = snapshot_store if persist else None
        self._view = EffectiveView(self.store, self.overlays, self.metrics)
        self._started = False

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """
        Seed from the snapshot, connect the channel, pull once and start the
        periodic reconciliation.

        Raises:
            AuthError: channel rejected the credentials
        """
        if self._started:
            return
        set_client_id(self.client_id)

        if self.snapshots is not None:
            seeded = self.snapshots.restore_into(self.store)
            self.snapshots.attach(self.store)
            if seeded:
                logger.info(f"Serving {seeded} cached orders until the first pull confirms them")

        try:
            await self.channel.connect(self.credentials.require())
        except AuthError:
            self.credentials.invalidate()
            raise

        try:
            await self.reconciler.refresh()
        except NetworkError as e:
            logger.warning(f"Initial pull failed, serving unconfirmed state: {e}")

        self.reconciler.start()
        self._started = True
        logger.info(f"Order sync client {self.client_id} started ({len(self.store)} orders)")

    async def stop(self) -> None:
        await self.reconciler.stop()
        await self.channel.disconnect()
        self.overlays.clear()
        if self.snapshots is not None:
            self.snapshots.detach()
        self._started = False
        logger.info(f"Order sync client {self.client_id} stopped")

    async def close(self) -> None:
        """Stop and release every subscription held by this client."""
        await self.stop()
        self.reconciler.close()
        self.overlays.detach()
        self.metrics.close()

    async def __aenter__(self) -> 'OrderSyncClient':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    # ========================================================================
    # Consumer API
    # ========================================================================

    def effective_view(self) -> EffectiveView:
        return self._view

    def subscribe(
        self,
        selector: Callable[[EffectiveView], Any],
        on_change: Callable[[Any], None],
    ) -> Tuple[Any, Subscription]:
        """
        Observe a value derived from the effective view.

        on_change fires after store or overlay changes, only when the
        selected value differs from the last one delivered.

        Returns:
            (initial value, Subscription)
        """
        last = [selector(self._view)]

        def _reselect(_payload: Any) -> None:
            value = selector(self._view)
            if value != last[0]:
                last[0] = value
                on_change(value)

        store_sub = self.store.add_listener(_reselect)
        overlay_sub = self.overlays.subscribe(_reselect)
        return last[0], _CompositeSubscription(store_sub, overlay_sub)

    async def refresh(self) -> None:
        """Force an authoritative pull now."""
        await self.reconciler.refresh()

    async def drain(self) -> None:
        """Wait until every event received so far has been applied."""
        await self.channel.drain()

    async def request_assignment(self, order_id: str, partner_id: str) -> AssignmentResult:
        return await self.coordinator.request_assignment(order_id, partner_id)

    async def request_transition(self, order_id: str, target: OrderStatus,
                                 partner_id: Optional[str] = None) -> Order:
        """
        Ask the authority to move an order to `target`.

        Validated locally first; the store changes only when the confirming
        event or the next pull arrives.

        Raises:
            OrderNotFound: order unknown locally
            InvalidTransition: not allowed from the current state (not forwarded)
            AuthError, NetworkError, BusinessRuleError: from the backend
        """
        order = self.store.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        validate_transition(order, target)

        return await self._forward_mutation(
            order_id, target, "transition",
            lambda creds: self.backend.transition_status(order_id, target, creds, partner_id=partner_id),
        )

    async def cancel_order(self, order_id: str, reason: str = "") -> Order:
        """Ask the authority to cancel a non-terminal order."""
        order = self.store.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        validate_transition(order, OrderStatus.CANCELLED)

        return await self._forward_mutation(
            order_id, OrderStatus.CANCELLED, "cancel",
            lambda creds: self.backend.cancel_order(order_id, reason, creds),
        )

    async def _forward_mutation(self, order_id: str, target: OrderStatus, kind: str, call) -> Order:
        token = new_intent_token("mut")

        @with_backoff()
        async def forward_mutation():
            return await call(self.credentials.require())

        with Trace(order_id=order_id, intent_token=token):
            self.overlays.add(order_id, token, kind, {"status": target})
            try:
                updated = await forward_mutation()
            except AuthError:
                self.credentials.invalidate()
                self.overlays.discard(token, reason="auth_failed")
                raise
            except (BusinessRuleError, NetworkError) as e:
                self.overlays.discard(token, reason=type(e).__name__)
                log_event(AUDIT_LOG(), "mutation_failed", level=logging.WARNING,
                          kind=kind, target=target.value, error=str(e))
                raise

        logger.info(f"{kind} accepted: {order_id} -> {updated.status.value}")
        return updated

    async def set_availability(self, partner_id: str, availability: PartnerAvailability) -> Partner:
        """
        Take a partner online or offline. The store follows when the
        partner_available event or the next pull arrives.

        Raises:
            PartnerBusy: going offline while holding an active order
            AuthError, NetworkError, BusinessRuleError: from the backend
        """
        @with_backoff()
        async def forward_availability():
            return await self.backend.set_partner_availability(
                partner_id, availability, self.credentials.require()
            )

        with Trace(partner_id=partner_id):
            try:
                partner = await forward_availability()
            except AuthError:
                self.credentials.invalidate()
                raise
            except BusinessRuleError as e:
                log_event(AUDIT_LOG(), "availability_rejected", level=logging.WARNING,
                          availability=availability.value, error=str(e))
                raise

        logger.info(f"Partner {partner_id} availability -> {partner.availability.value}")
        return partner

    def set_credentials(self, credentials: str) -> None:
        self.credentials.set(credentials)


class _CompositeSubscription(Subscription):
    """Closes several underlying subscriptions as one handle."""

    def __init__(self, *subs: Subscription):
        self._subs = subs
        self.topic = ",".join(s.topic for s in subs)
        self._active = True

    def close(self) -> None:
        if self._active:
            for sub in self._subs:
                sub.close()
            self._active = False
