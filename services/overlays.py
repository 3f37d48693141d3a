#!/usr/bin/env python3
"""
Optimistic overlays - pending local changes shown before confirmation

An overlay is a speculative patch for one order (assignment requested,
status change requested). Overlays never enter OrderStateStore; readers see
them only through OverlayRegistry.apply(). Each overlay ends in one of:
- confirmed: the store reached the overlay's values
- discarded: the authority rejected the intent, or the order moved elsewhere
- expired: no confirmation within OVERLAY_TIMEOUT_S (loop.call_later)

After any of these the reader falls back to the last confirmed store state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import config
from core.event_bus import EventBus, Subscription
from core.logger_factory import ASSIGN_LOG, log_event
from core.models import Order
from core.store import OrderStateStore, StoreChange

logger = logging.getLogger(__name__)

TOPIC_OVERLAY = "overlay"


@dataclass
class Overlay:
    token: str
    order_id: str
    kind: str
    changes: Dict[str, Any]
    created_at: float = field(default_factory=time.monotonic)
    expires_at: float = 0.0
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False, compare=False)

    def satisfied_by(self, order: Order) -> bool:
        return all(getattr(order, k) == v for k, v in self.changes.items())

    def superseded_by(self, order: Order) -> bool:
        """True when the confirmed order can no longer reach this overlay."""
        if order.is_terminal():
            return True
        partner = self.changes.get("assigned_partner")
        return bool(partner and order.assigned_partner and order.assigned_partner != partner)


@dataclass(frozen=True)
class OverlayEvent:
    """Published on every overlay add/removal. outcome: added|confirmed|discarded|expired"""
    outcome: str
    overlay: Overlay


class OverlayRegistry:
    """
    Pending overlays keyed by intent token.
    """

    def __init__(self, timeout_s: Optional[float] = None):
        self._timeout_s = timeout_s
        self._overlays: Dict[str, Overlay] = {}
        self.bus = EventBus("overlays")
        self._store_sub: Optional[Subscription] = None

    @property
    def timeout_s(self) -> float:
        if self._timeout_s is not None:
            return self._timeout_s
        return config.get_config("OVERLAY_TIMEOUT_S")

    def add(self, order_id: str, token: str, kind: str, changes: Dict[str, Any]) -> Overlay:
        """
        Register an overlay. Inside a running loop its expiry is scheduled
        with call_later; otherwise use expire_overdue().
        """
        self.discard(token, reason="replaced")
        now = time.monotonic()
        overlay = Overlay(token=token, order_id=order_id, kind=kind, changes=dict(changes),
                          created_at=now, expires_at=now + self.timeout_s)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            overlay.timer = loop.call_later(self.timeout_s, self._expire, token)

        self._overlays[token] = overlay
        logger.debug(f"Overlay added: {kind} on {order_id} ({token})")
        self.bus.publish(TOPIC_OVERLAY, OverlayEvent("added", overlay))
        return overlay

    def get(self, token: str) -> Optional[Overlay]:
        return self._overlays.get(token)

    def pending(self, order_id: Optional[str] = None) -> List[Overlay]:
        overlays = sorted(self._overlays.values(), key=lambda o: o.created_at)
        if order_id is None:
            return overlays
        return [o for o in overlays if o.order_id == order_id]

    def __len__(self) -> int:
        return len(self._overlays)

    def discard(self, token: str, reason: str = "discarded") -> bool:
        return self._remove(token, "discarded", reason)

    def confirm(self, token: str) -> bool:
        return self._remove(token, "confirmed", "confirmed")

    def resolve_order(self, order: Order) -> int:
        """Settle every overlay on `order` against its confirmed state."""
        settled = 0
        for overlay in self.pending(order.id):
            if overlay.satisfied_by(order):
                settled += self.confirm(overlay.token)
            elif overlay.superseded_by(order):
                settled += self.discard(overlay.token, reason="superseded")
        return settled

    def expire_overdue(self, now: Optional[float] = None) -> int:
        now = time.monotonic() if now is None else now
        overdue = [o.token for o in self._overlays.values() if o.expires_at <= now]
        for token in overdue:
            self._expire(token)
        return len(overdue)

    def apply(self, order: Optional[Order]) -> Optional[Order]:
        """Return `order` with its pending overlays laid over it, oldest first."""
        if order is None:
            return None
        for overlay in self.pending(order.id):
            order = order.with_changes(**overlay.changes)
        return order

    def subscribe(self, fn: Callable[[OverlayEvent], None]) -> Subscription:
        return self.bus.subscribe(TOPIC_OVERLAY, fn)

    def attach(self, store: OrderStateStore) -> Subscription:
        """Resolve overlays as confirmed order changes land in the store."""
        def _on_change(change: StoreChange) -> None:
            if change.kind == "order" and change.current is not None:
                self.resolve_order(change.current)
            elif change.kind == "remove" and change.key:
                for overlay in self.pending(change.key):
                    self.discard(overlay.token, reason="order_removed")

        if self._store_sub is not None:
            self._store_sub.close()
        self._store_sub = store.add_listener(_on_change)
        return self._store_sub

    def clear(self) -> None:
        for token in list(self._overlays):
            self.discard(token, reason="cleared")

    def detach(self) -> None:
        if self._store_sub is not None:
            self._store_sub.close()
            self._store_sub = None

    def _expire(self, token: str) -> None:
        overlay = self._overlays.get(token)
        if overlay is None:
            return
        logger.info(f"Overlay expired without confirmation: {overlay.kind} on {overlay.order_id}")
        log_event(
            ASSIGN_LOG(),
            "overlay_expired",
            level=logging.WARNING,
            order_id=overlay.order_id,
            intent_token=token,
            kind=overlay.kind,
        )
        self._remove(token, "expired", "timeout")

    def _remove(self, token: str, outcome: str, reason: str) -> bool:
        overlay = self._overlays.pop(token, None)
        if overlay is None:
            return False
        if overlay.timer is not None:
            overlay.timer.cancel()
            overlay.timer = None
        logger.debug(f"Overlay {outcome}: {overlay.kind} on {overlay.order_id} ({reason})")
        self.bus.publish(TOPIC_OVERLAY, OverlayEvent(outcome, overlay))
        return True
