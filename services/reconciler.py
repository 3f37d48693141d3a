#!/usr/bin/env python3
"""
Reconciler - Folds channel events and authoritative pulls into the store

Responsibilities:
- Turn each inbound channel event into a candidate patch and apply it
  through OrderStateStore.upsert()
- Drop replayed events: same (order, lifecycle state) inside DEDUP_WINDOW_S,
  or a per-order seq lower than the last one seen
- Pull the full authoritative order set every PULL_INTERVAL_S and on
  resync_required, then reconcile it against the store

Reconcile rule for a pull:
- Authoritative orders missing locally are inserted
- Orders whose status and partner agree are confirmed
- Disagreeing orders first go through a normal upsert; if they still
  disagree after UNCONFIRMED_TIMEOUT_S they are overwritten
- Local-only orders are dropped once unconfirmed past the same timeout

NOT Responsible For:
- Applying assignment confirmations (delegated to the AssignmentCoordinator)
- Deciding anything the authority has not said
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import config
from core.event_schemas import ChannelEvent, EventType, ReconcileSummary
from core.exceptions import NetworkError, OrderSyncError, StaleSnapshotError
from core.logger_factory import AUDIT_LOG, SYNC_LOG, log_event
from core.models import STATUS_TIMESTAMP_FIELD, LifecycleState, Order, OrderStatus, PartnerAvailability
from core.order_fsm import target_state
from core.retry import with_backoff
from core.store import OrderStateStore, UpsertResult
from services.backend import OrderBackend, PullResult
from services.sync_channel import ANY_EVENT, SyncChannel

logger = logging.getLogger(__name__)

AssignmentHandler = Callable[[ChannelEvent], UpsertResult]


@dataclass
class ReconcileReport:
    """Running counters since the engine was created."""
    applied: int = 0
    duplicates: int = 0
    stale: int = 0
    rejected: int = 0
    inserted: int = 0
    confirmed: int = 0
    overwritten: int = 0
    dropped: int = 0
    pulls: int = 0
    pull_failures: int = 0
    last_pull_at: Optional[float] = None


class DedupWindow:
    """
    Remembers (order_id, state) keys for a trailing time window.

    Bounded: the oldest keys are evicted beyond max_entries.
    """

    def __init__(self, window_s: float, max_entries: int = 5000, clock: Callable[[], float] = time.time):
        self.window_s = window_s
        self.max_entries = max_entries
        self._clock = clock
        self._seen: "OrderedDict[Tuple[str, str], float]" = OrderedDict()

    def seen(self, key: Tuple[str, str]) -> bool:
        """Record `key`; return True if it was already seen inside the window."""
        now = self._clock()
        self._evict(now)

        first_seen = self._seen.get(key)
        if first_seen is not None and now - first_seen <= self.window_s:
            return True

        self._seen[key] = now
        self._seen.move_to_end(key)
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
        return False

    def _evict(self, now: float) -> None:
        while self._seen:
            key, ts = next(iter(self._seen.items()))
            if now - ts <= self.window_s:
                break
            del self._seen[key]

    def __len__(self) -> int:
        return len(self._seen)


class ReconciliationEngine:
    """
    Keeps OrderStateStore consistent with the authoritative backend.
    """

    def __init__(
        self,
        store: OrderStateStore,
        backend: OrderBackend,
        channel: Optional[SyncChannel] = None,
        on_assignment: Optional[AssignmentHandler] = None,
        clock: Callable[[], float] = time.time,
        pull_interval_s: Optional[float] = None,
        unconfirmed_timeout_s: Optional[float] = None,
        dedup_window_s: Optional[float] = None,
    ):
        self.store = store
        self.backend = backend
        self.on_assignment = on_assignment
        self._clock = clock
        self.pull_interval_s = pull_interval_s or config.get_config("PULL_INTERVAL_S")
        self.unconfirmed_timeout_s = (
            unconfirmed_timeout_s if unconfirmed_timeout_s is not None
            else config.get_config("UNCONFIRMED_TIMEOUT_S")
        )
        self.dedup = DedupWindow(
            dedup_window_s if dedup_window_s is not None else config.get_config("DEDUP_WINDOW_S"),
            max_entries=config.get_config("DEDUP_MAX_ENTRIES"),
            clock=clock,
        )
        self.report = ReconcileReport()

        self._last_seq: Dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None
        self._pending_refresh: Optional[asyncio.Task] = None
        self._subscription = channel.subscribe(ANY_EVENT, self.handle_event) if channel else None

        logger.info(
            f"Reconciler initialized (pull every {self.pull_interval_s:.0f}s, "
            f"unconfirmed timeout {self.unconfirmed_timeout_s:.0f}s)"
        )

    # ========================================================================
    # Channel events
    # ========================================================================

    def handle_event(self, event: ChannelEvent) -> Optional[UpsertResult]:
        """
        Apply one channel event.

        Returns:
            UpsertResult for order events that reached the store, else None
        """
        if event.event_type is EventType.RESYNC_REQUIRED:
            log_event(SYNC_LOG(), "resync_required")
            self.schedule_refresh()
            return None

        if event.event_type is EventType.PARTNER_AVAILABLE:
            self.store.set_partner_availability(
                event.partner_id, event.availability or PartnerAvailability.AVAILABLE
            )
            return None

        state = _event_state(event)
        if self._is_stale(event):
            self.report.stale += 1
            log_event(SYNC_LOG(), "event_stale", order_id=event.order_id, seq=event.seq,
                      last_seq=self._last_seq.get(event.order_id))
            return None
        if self.dedup.seen((event.order_id, state.value)):
            self.report.duplicates += 1
            log_event(SYNC_LOG(), "event_deduplicated", order_id=event.order_id, state=state.value)
            return None

        if event.event_type is EventType.ORDER_ASSIGNED and self.on_assignment is not None:
            result = self.on_assignment(event)
        else:
            result = self.store.upsert(_event_patch(event))

        if result.applied:
            self.report.applied += 1
        elif result.reason == "unknown_order":
            logger.info(f"Event {event.event_type.value} for unknown order {event.order_id}, pulling")
            self.schedule_refresh()
        elif result.reason not in ("unchanged", "replayed"):
            self.report.rejected += 1
            log_event(SYNC_LOG(), "event_rejected", order_id=event.order_id,
                      event_type=event.event_type.value, reason=result.reason)
        return result

    def _is_stale(self, event: ChannelEvent) -> bool:
        if event.seq is None:
            return False
        last = self._last_seq.get(event.order_id)
        if last is not None and event.seq < last:
            return True
        self._last_seq[event.order_id] = event.seq
        return False

    # ========================================================================
    # Authoritative pull
    # ========================================================================

    @with_backoff()
    async def _pull(self) -> PullResult:
        return await self.backend.pull_orders()

    async def refresh(self) -> ReconcileSummary:
        """
        Pull the authoritative order set and reconcile the store against it.

        Raises:
            NetworkError: backend unreachable after bounded retries
        """
        start = time.monotonic()
        try:
            result = await self._pull()
        except NetworkError as e:
            self.report.pull_failures += 1
            log_event(SYNC_LOG(), "pull_failed", level=logging.WARNING, error=str(e), attempts=e.attempts)
            raise

        summary = self.reconcile(result)
        summary.duration_ms = int((time.monotonic() - start) * 1000)
        log_event(SYNC_LOG(), "pull_reconciled", **summary.model_dump())
        return summary

    def reconcile(self, result: PullResult) -> ReconcileSummary:
        """Fold one PullResult into the store (synchronous, no suspension)."""
        now = self._clock()
        summary = ReconcileSummary(pulled=len(result.orders))
        authoritative_ids = set()

        for order in result.orders:
            authoritative_ids.add(order.id)
            local = self.store.get(order.id)

            if local is None:
                self.store.upsert(order)
                self.store.mark_order_confirmed(order.id)
                summary.inserted += 1
                continue

            if _agrees(local, order):
                self.store.upsert(order, force=True)
                self.store.mark_order_confirmed(order.id)
                summary.confirmed += 1
                continue

            self.store.upsert(order)
            if _agrees(self.store.get(order.id), order):
                self.store.upsert(order, force=True)
                self.store.mark_order_confirmed(order.id)
                summary.advanced += 1
                continue

            self.store.mark_unconfirmed(order.id, now)
            unconfirmed_for = now - self.store.unconfirmed_since(order.id)
            if unconfirmed_for >= self.unconfirmed_timeout_s:
                self._overwrite(local, order, unconfirmed_for)
                summary.overwritten += 1
            else:
                summary.pending += 1

        for local in self.store.all_orders():
            if local.id in authoritative_ids:
                continue
            self.store.mark_unconfirmed(local.id, now)
            if now - self.store.unconfirmed_since(local.id) >= self.unconfirmed_timeout_s:
                self.store.remove(local.id)
                summary.dropped += 1
                log_event(AUDIT_LOG(), "local_order_dropped", level=logging.WARNING,
                          order_id=local.id, status=local.status.value)
            else:
                summary.pending += 1

        for partner in result.partners:
            self.store.upsert_partner(partner)

        self.store.mark_confirmed()

        self.report.pulls += 1
        self.report.last_pull_at = now
        self.report.inserted += summary.inserted
        self.report.confirmed += summary.confirmed + summary.advanced
        self.report.overwritten += summary.overwritten
        self.report.dropped += summary.dropped
        return summary

    def _overwrite(self, local: Order, authoritative: Order, unconfirmed_for: float) -> None:
        error = StaleSnapshotError(local.id, unconfirmed_for)
        logger.warning(f"{error}; overwriting with authoritative state")
        log_event(
            AUDIT_LOG(),
            "stale_overwrite",
            message=str(error),
            level=logging.WARNING,
            order_id=local.id,
            local_status=local.status.value,
            local_partner=local.assigned_partner,
            authoritative_status=authoritative.status.value,
            authoritative_partner=authoritative.assigned_partner,
        )
        self.store.upsert(authoritative, force=True)
        self.store.mark_order_confirmed(local.id)

    # ========================================================================
    # Periodic task
    # ========================================================================

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        for task in (self._task, self._pending_refresh):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._pending_refresh = None

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule_refresh(self) -> Optional[asyncio.Task]:
        """Queue an immediate pull, coalescing with one already pending."""
        if self._pending_refresh is not None and not self._pending_refresh.done():
            return self._pending_refresh
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        self._pending_refresh = loop.create_task(self._refresh_quietly())
        return self._pending_refresh

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.pull_interval_s)
            await self._refresh_quietly()

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except OrderSyncError as e:
            logger.warning(f"Authoritative pull failed: {e}")


def _agrees(local: Optional[Order], authoritative: Order) -> bool:
    return (
        local is not None
        and local.status is authoritative.status
        and local.assigned_partner == authoritative.assigned_partner
    )


def _event_state(event: ChannelEvent) -> LifecycleState:
    if event.event_type is EventType.ORDER_ASSIGNED:
        return LifecycleState.PREP_ASSIGNED
    if event.event_type is EventType.ORDER_DELIVERED:
        return LifecycleState.DELIVERED
    if event.event_type is EventType.ORDER_CREATED:
        status = OrderStatus((event.order or {}).get("status", "PREP"))
        return target_state(status)
    return target_state(event.status)


def _event_patch(event: ChannelEvent) -> Dict:
    """Candidate store patch carried by an order event."""
    if event.event_type is EventType.ORDER_CREATED:
        patch = dict(event.order)
        patch["id"] = event.order_id
        return patch

    status = OrderStatus.DELIVERED if event.event_type is EventType.ORDER_DELIVERED else event.status
    patch = {"id": event.order_id}
    if status is not None:
        patch["status"] = status
    if event.partner_id:
        patch["assigned_partner"] = event.partner_id

    order = event.order or {}
    for ts_field in ("assigned_at",) + tuple(STATUS_TIMESTAMP_FIELD.values()):
        if order.get(ts_field) is not None:
            patch[ts_field] = order[ts_field]
    ts_field = STATUS_TIMESTAMP_FIELD.get(status)
    if ts_field and ts_field not in patch:
        patch[ts_field] = event.timestamp
    return patch
