#!/usr/bin/env python3
"""
Event Bus - Instance-scoped Pub/Sub

Decouples producers (channel pump, store) from consumers (reconciler,
metrics, persistence, UI subscriptions). Each bus is constructed and
passed explicitly; there is no module-level registry.

Handler exceptions are logged and never propagate into the publisher,
so a faulty consumer cannot stall the single writer loop.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class Subscription:
    """Handle returned by subscribe(); close() detaches the handler."""

    def __init__(self, bus: 'EventBus', topic: str, fn: Handler) -> None:
        self._bus = bus
        self.topic = topic
        self._fn = fn
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        if self._active:
            self._bus.unsubscribe(self.topic, self._fn)
            self._active = False

    def __enter__(self) -> 'Subscription':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class EventBus:
    """
    Simple pub/sub event bus with topic-based routing.
    """

    def __init__(self, name: str = "bus") -> None:
        self.name = name
        self._subs: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, fn: Handler) -> Subscription:
        """
        Subscribe a callback to a topic.

        Args:
            topic: Topic name (e.g., "order_status_changed")
            fn: Callback receiving the payload
        """
        self._subs[topic].append(fn)
        return Subscription(self, topic, fn)

    def publish(self, topic: str, payload: Any) -> int:
        """
        Publish a payload to all subscribers of a topic.

        Returns:
            Number of handlers that ran without raising
        """
        delivered = 0
        for fn in list(self._subs.get(topic, [])):
            try:
                fn(payload)
                delivered += 1
            except Exception as e:
                logger.warning(
                    f"[{self.name}] handler {getattr(fn, '__name__', fn)!r} failed for {topic}: {e}",
                    exc_info=True,
                )
        return delivered

    def unsubscribe(self, topic: str, fn: Handler) -> None:
        if topic in self._subs:
            try:
                self._subs[topic].remove(fn)
            except ValueError:
                pass

    def subscriber_count(self, topic: str) -> int:
        return len(self._subs.get(topic, []))

    def clear(self) -> None:
        """Clear all subscriptions (useful for testing)."""
        self._subs.clear()
