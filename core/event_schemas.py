#!/usr/bin/env python3
"""
Event Schemas - Pydantic Models for Channel Events, Intents and Snapshots

One typed taxonomy for everything that crosses a process boundary:
- Channel events (order_created, order_assigned, order_status_changed,
  order_delivered, partner_available, resync_required)
- Assignment intents and the authority's response
- The persisted snapshot record
- Structured log payloads (retry attempts, reconcile summaries)

Every channel payload carries schema_version so consumers can reject
payloads they do not understand instead of misreading them.

Usage:
    from core.event_schemas import ChannelEvent, EventType

    ev = ChannelEvent.model_validate(raw)
    if ev.event_type is EventType.ORDER_STATUS_CHANGED:
        ...
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError
from core.models import OrderStatus, PartnerAvailability

EVENT_SCHEMA_VERSION = 1


class EventType(str, Enum):
    ORDER_CREATED = "order_created"
    ORDER_ASSIGNED = "order_assigned"
    ORDER_STATUS_CHANGED = "order_status_changed"
    ORDER_DELIVERED = "order_delivered"
    PARTNER_AVAILABLE = "partner_available"
    RESYNC_REQUIRED = "resync_required"


# Fields each event type must carry
_REQUIRED_FIELDS = {
    EventType.ORDER_CREATED: ("order_id", "order"),
    EventType.ORDER_ASSIGNED: ("order_id", "partner_id"),
    EventType.ORDER_STATUS_CHANGED: ("order_id", "status"),
    EventType.ORDER_DELIVERED: ("order_id",),
    EventType.PARTNER_AVAILABLE: ("partner_id",),
    EventType.RESYNC_REQUIRED: (),
}


# =============================================================================
# CHANNEL EVENTS
# =============================================================================

class ChannelEvent(BaseModel):
    """
    Push event delivered over the sync channel.

    Fields:
        event_type: One of EventType
        order_id: Internal order id (all order events)
        status: Resulting order status (status events)
        partner_id: Assigned or newly available partner
        availability: New partner availability (partner_available; unset means available)
        intent_token: Idempotency token of the intent an assignment confirms
        order: Full order payload (order_created)
        seq: Per-order sequence number, non-decreasing when present
        timestamp: Authority timestamp (epoch seconds)
        schema_version: Payload schema version
    """
    model_config = ConfigDict(frozen=True)

    event_type: EventType
    order_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    partner_id: Optional[str] = None
    availability: Optional[PartnerAvailability] = None
    intent_token: Optional[str] = None
    order: Optional[Dict[str, Any]] = None
    seq: Optional[int] = Field(default=None, ge=0)
    timestamp: float = Field(default_factory=time.time)
    schema_version: int = EVENT_SCHEMA_VERSION

    @model_validator(mode="after")
    def _check_shape(self) -> 'ChannelEvent':
        if self.schema_version != EVENT_SCHEMA_VERSION:
            raise ValueError(
                f"unsupported schema_version {self.schema_version} (expected {EVENT_SCHEMA_VERSION})"
            )
        missing = [f for f in _REQUIRED_FIELDS[self.event_type] if getattr(self, f) is None]
        if missing:
            raise ValueError(f"{self.event_type.value} missing fields: {', '.join(missing)}")
        return self


def parse_event(raw: Any) -> ChannelEvent:
    """
    Validate a raw channel payload.

    Raises:
        ValidationError: payload malformed or of an unknown schema version
    """
    if isinstance(raw, ChannelEvent):
        return raw
    try:
        return ChannelEvent.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed channel event: {e.errors()[0].get('msg')}") from e


# =============================================================================
# ASSIGNMENT
# =============================================================================

class AssignmentIntent(BaseModel):
    """
    Request by a partner to take an order. Not a mutation: the authority
    decides, and the local store changes only on its confirmation.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    order_id: str = Field(min_length=1)
    partner_id: str = Field(min_length=1)
    token: str = Field(min_length=8)
    issued_at: float = Field(default_factory=time.time)


class AssignmentResponse(BaseModel):
    """Authority's answer to an accepted intent."""
    model_config = ConfigDict(frozen=True)

    order_id: str
    partner_id: str
    token: str
    assigned_at: float
    replayed: bool = False


def build_intent(order_id: Any, partner_id: Any, token: Any) -> AssignmentIntent:
    """
    Build a validated intent.

    Raises:
        ValidationError: missing or malformed fields
    """
    try:
        return AssignmentIntent(order_id=order_id, partner_id=partner_id, token=token)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(f"Invalid assignment intent ({field_name}): {first.get('msg')}") from e


# =============================================================================
# PERSISTED SNAPSHOT
# =============================================================================

class SnapshotRecord(BaseModel):
    """
    Single versioned snapshot of the last known order set.

    Fields:
        schema_version: Layout version; mismatches discard the snapshot
        orders: Order.to_dict() payloads
        partners: Partner.to_dict() payloads
        saved_at: Epoch seconds of the write
    """
    schema_version: int
    orders: List[Dict[str, Any]] = Field(default_factory=list)
    partners: List[Dict[str, Any]] = Field(default_factory=list)
    saved_at: float = Field(default_factory=time.time)


# =============================================================================
# STRUCTURED LOG PAYLOADS
# =============================================================================

class RetryAttempt(BaseModel):
    """Retry attempt for a transient failure."""
    operation: str
    attempt: int
    max_retries: int
    error_class: str
    error_message: str
    backoff_ms: int
    will_retry: bool


class ReconcileSummary(BaseModel):
    """Outcome of one authoritative pull."""
    pulled: int
    inserted: int = 0
    advanced: int = 0
    confirmed: int = 0
    overwritten: int = 0
    dropped: int = 0
    pending: int = 0
    duration_ms: int = 0
