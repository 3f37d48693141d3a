#!/usr/bin/env python3
"""
Assignment Coordinator - Partner assignment via the authoritative backend

Flow for request_assignment(order_id, partner_id):
1. Build and validate the intent (ValidationError, nothing forwarded)
2. Show an optimistic overlay keyed by the intent token
3. Forward to the backend's compare-and-swap endpoint (NetworkError retried
   with the same token, so a retried intent cannot assign twice)
4. Resolve to AssignmentResult: accepted, or rejected with a reason

The local store never changes here. The order is assigned locally only when
the order_assigned confirmation arrives over the channel (apply_confirmation)
or when the next authoritative pull carries it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from core.event_schemas import AssignmentIntent, AssignmentResponse, ChannelEvent, build_intent
from core.exceptions import (
    AlreadyAssigned,
    AuthError,
    BusinessRuleError,
    NetworkError,
    OrderNotFound,
    PartnerBusy,
    PartnerUnavailable,
)
from core.logger_factory import ASSIGN_LOG, log_event
from core.retry import with_backoff
from core.store import OrderStateStore, UpsertResult
from core.trace_context import new_intent_token, trace_intent
from services.backend import Credentials, OrderBackend
from services.overlays import OverlayRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssignmentResult:
    """
    Outcome of one assignment intent.

    reason: accepted | already_assigned | partner_busy | partner_unavailable |
            not_found | rejected
    """
    accepted: bool
    order_id: str
    partner_id: str
    token: str
    reason: str
    replayed: bool = False

    @property
    def rejected(self) -> bool:
        return not self.accepted


class AssignmentCoordinator:
    """
    Issues assignment intents and applies the authority's confirmations.
    """

    def __init__(self, store: OrderStateStore, backend: OrderBackend, overlays: OverlayRegistry,
                 credentials: Credentials):
        self.store = store
        self.backend = backend
        self.overlays = overlays
        self.credentials = credentials

    @with_backoff()
    async def _forward(self, intent: AssignmentIntent) -> AssignmentResponse:
        return await self.backend.request_assignment(intent, self.credentials.require())

    async def request_assignment(self, order_id: str, partner_id: str,
                                 token: Optional[str] = None) -> AssignmentResult:
        """
        Ask the authority to assign `order_id` to `partner_id`.

        Business-rule conflicts resolve to a rejected result and are never
        retried.

        Raises:
            ValidationError: malformed intent (not forwarded)
            AuthError: credentials rejected (credentials are invalidated)
            NetworkError: backend unreachable after bounded retries
        """
        token = token or new_intent_token()
        with trace_intent(order_id, partner_id, token):
            intent = build_intent(order_id, partner_id, token)
            self.overlays.add(order_id, token, "assignment", {"assigned_partner": partner_id})
            log_event(ASSIGN_LOG(), "intent_forwarded")

            try:
                response = await self._forward(intent)
            except AlreadyAssigned as e:
                return self._reject(intent, "already_assigned", e)
            except PartnerBusy as e:
                return self._reject(intent, "partner_busy", e)
            except PartnerUnavailable as e:
                return self._reject(intent, "partner_unavailable", e)
            except OrderNotFound as e:
                return self._reject(intent, "not_found", e)
            except BusinessRuleError as e:
                return self._reject(intent, "rejected", e)
            except AuthError:
                self.credentials.invalidate()
                self.overlays.discard(token, reason="auth_failed")
                log_event(ASSIGN_LOG(), "intent_auth_failed", level=logging.ERROR)
                raise
            except NetworkError as e:
                self.overlays.discard(token, reason="network")
                log_event(ASSIGN_LOG(), "intent_failed", level=logging.WARNING,
                          error=str(e), attempts=e.attempts)
                raise

            log_event(ASSIGN_LOG(), "intent_accepted", replayed=response.replayed,
                      assigned_at=response.assigned_at)
            logger.info(f"Assignment accepted: {order_id} -> {partner_id}")
            return AssignmentResult(True, order_id, partner_id, token, "accepted", replayed=response.replayed)

    def _reject(self, intent: AssignmentIntent, reason: str, error: BusinessRuleError) -> AssignmentResult:
        self.overlays.discard(intent.token, reason=reason)
        logger.info(f"Assignment rejected: {intent.order_id} -> {intent.partner_id} ({reason})")
        log_event(ASSIGN_LOG(), "intent_rejected", reason=reason, error=str(error))
        return AssignmentResult(False, intent.order_id, intent.partner_id, intent.token, reason)

    def apply_confirmation(self, event: ChannelEvent) -> UpsertResult:
        """
        Apply an order_assigned confirmation from the channel.

        A replay naming the partner already stored is a no-op; one naming a
        different partner is rejected and logged.
        """
        order_id, partner_id = event.order_id, event.partner_id
        current = self.store.get(order_id)

        with trace_intent(order_id, partner_id, event.intent_token or "unknown"):
            if current is None:
                if event.order:
                    payload = dict(event.order, id=order_id, assigned_partner=partner_id)
                    result = self.store.upsert(payload)
                    log_event(ASSIGN_LOG(), "assignment_confirmed", inserted=True)
                    return result
                return UpsertResult(False, None, "unknown_order")

            if current.assigned_partner == partner_id:
                self.overlays.resolve_order(current)
                log_event(ASSIGN_LOG(), "confirmation_replayed")
                return UpsertResult(False, current, "replayed", previous=current)

            if current.assigned_partner:
                logger.warning(
                    f"Confirmation for {order_id} names {partner_id}, "
                    f"store holds {current.assigned_partner}; ignored"
                )
                log_event(ASSIGN_LOG(), "confirmation_conflict", level=logging.WARNING,
                          stored_partner=current.assigned_partner)
                return UpsertResult(False, current, "assignment_conflict", previous=current)

            assigned_at = (event.order or {}).get("assigned_at") or event.timestamp
            result = self.store.upsert({"id": order_id, "assigned_partner": partner_id, "assigned_at": assigned_at})
            if result.applied:
                log_event(ASSIGN_LOG(), "assignment_confirmed")
            return result
