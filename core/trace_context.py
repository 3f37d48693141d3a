#!/usr/bin/env python3
"""
Trace Context - Correlation IDs using ContextVars

Correlation IDs propagate automatically through the coroutine call chain
without explicit passing. Each asyncio task copies the context it was
created in, so a Trace opened around an intent follows it into retries.

Usage:
    with Trace(order_id="ord_123") as tr:
        # All structured logs within this context see order_id
        await forward_intent()

        tr.set(intent_token="tok_456")
        apply_confirmation()
"""

from contextvars import ContextVar
import uuid
from typing import Optional, Dict


# Context Variables for Correlation IDs
client_id_var: ContextVar[Optional[str]] = ContextVar("client_id", default=None)
order_id_var: ContextVar[Optional[str]] = ContextVar("order_id", default=None)
intent_token_var: ContextVar[Optional[str]] = ContextVar("intent_token", default=None)
partner_id_var: ContextVar[Optional[str]] = ContextVar("partner_id", default=None)


def get_correlation_ids() -> Dict[str, Optional[str]]:
    """Get all current correlation IDs as dict."""
    return {
        "client_id": client_id_var.get(),
        "order_id": order_id_var.get(),
        "intent_token": intent_token_var.get(),
        "partner_id": partner_id_var.get(),
    }


def set_client_id(client_id: str) -> None:
    """Set the process-wide client ID (call once at startup)."""
    client_id_var.set(client_id)


def new_intent_token(prefix: str = "tok") -> str:
    """Generate a new idempotency token for an intent."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class Trace:
    """
    Context manager for correlation ID propagation.

    Sets the given IDs on enter and restores the previous values on exit.
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        order_id: Optional[str] = None,
        intent_token: Optional[str] = None,
        partner_id: Optional[str] = None,
    ):
        self.tokens = []
        self.values = {}

        # Preserve existing client_id if not explicitly set
        if client_id is None:
            client_id = client_id_var.get()

        if client_id is not None:
            self.values[client_id_var] = client_id
        if order_id is not None:
            self.values[order_id_var] = order_id
        if intent_token is not None:
            self.values[intent_token_var] = intent_token
        if partner_id is not None:
            self.values[partner_id_var] = partner_id

    def __enter__(self):
        for var, val in self.values.items():
            token = var.set(val)
            self.tokens.append((var, token))
        return self

    def set(
        self,
        order_id: Optional[str] = None,
        intent_token: Optional[str] = None,
        partner_id: Optional[str] = None,
    ) -> 'Trace':
        """Set additional correlation IDs within an open context."""
        updates = [
            (order_id_var, order_id),
            (intent_token_var, intent_token),
            (partner_id_var, partner_id),
        ]

        for var, val in updates:
            if val is not None:
                token = var.set(val)
                self.tokens.append((var, token))

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        # Reset in reverse order (LIFO)
        while self.tokens:
            var, token = self.tokens.pop()
            var.reset(token)

        return False


def trace_intent(order_id: str, partner_id: str, intent_token: Optional[str] = None) -> Trace:
    """Create trace context for an assignment intent."""
    if intent_token is None:
        intent_token = new_intent_token()
    return Trace(order_id=order_id, partner_id=partner_id, intent_token=intent_token)
