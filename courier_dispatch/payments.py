"""
Stripe collaborator (checkout sessions, webhook signature verification) and the payment reconciler
that turns verified checkout.session.completed (and, for delayed payment methods,
checkout.session.async_payment_succeeded) events into exactly one paid transition per order.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Mapping

import stripe

from courier_dispatch.db import NOW, Not
from courier_dispatch.errors import AuthenticationFailed, PermanentEventError, UpstreamUnavailable
from courier_dispatch.lifecycle import OrderRepository, commit_transition
from courier_dispatch.metrics import webhook_events_total
from courier_dispatch.order_state import OrderStatus, PaymentStatus
from courier_dispatch.queue import NOTIFY_PREFIX, TASK_AUTO_ASSIGN, TaskQueue

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
# delayed payment methods complete the session unpaid and settle later with this event
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
PAYMENT_EVENTS = (CHECKOUT_COMPLETED, ASYNC_PAYMENT_SUCCEEDED)


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway:
    """Explicitly constructed Stripe client; every call passes its own api key."""

    def __init__(self, secret_key: str, webhook_secret: str, success_url: str, cancel_url: str,
                 tolerance: int = 300):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._tolerance = tolerance

    async def create_checkout_session(self, order_id: str, amount: Decimal, currency: str,
                                      customer_email: str | None, description: str) -> CheckoutSession:
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": description},
                    "unit_amount": to_minor_units(amount),
                },
                "quantity": 1,
            }],
            "metadata": {"order_id": order_id},
            "payment_intent_data": {"metadata": {"order_id": order_id}},
            "client_reference_id": order_id,
            "success_url": self._success_url,
            "cancel_url": self._cancel_url,
        }
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create, api_key=self._secret_key, **params
            )
        except stripe.StripeError as e:
            logger.error("Stripe checkout session creation failed for order %s: %s", order_id, e)
            raise UpstreamUnavailable("Payment provider could not create a checkout session") from e
        return CheckoutSession(session_id=session.id, url=session.url)

    async def expire_checkout_session(self, session_id: str) -> None:
        try:
            await asyncio.to_thread(stripe.checkout.Session.expire, session_id, api_key=self._secret_key)
        except stripe.StripeError as e:
            raise UpstreamUnavailable(f"Could not expire checkout session {session_id}") from e

    def verify_event(self, payload: bytes, signature: str | None) -> dict:
        """Verify the signature over the raw body, then parse it. Fails closed."""
        if not signature:
            raise AuthenticationFailed("Missing Stripe-Signature header")
        if not self._webhook_secret:
            raise AuthenticationFailed("Webhook secret is not configured")
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, self._webhook_secret, self._tolerance)
            event = json.loads(text)
        except stripe.SignatureVerificationError as e:
            raise AuthenticationFailed("Invalid webhook signature") from e
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise AuthenticationFailed("Unparseable webhook payload") from e
        if not isinstance(event, dict):
            raise AuthenticationFailed("Unparseable webhook payload")
        return event


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNRECONCILED = "unreconciled"
    PERMANENT_ERROR = "permanent_error"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    event_type: str
    order_id: str | None = None


class PaymentReconciler:
    def __init__(self, store: OrderRepository, gateway: StripeGateway, queue: TaskQueue,
                 auto_assign: bool = False):
        self._store = store
        self._gateway = gateway
        self._queue = queue
        self._auto_assign = auto_assign

    async def handle_webhook(self, payload: bytes, signature: str | None) -> ReconcileResult:
        try:
            event = self._gateway.verify_event(payload, signature)
        except AuthenticationFailed:
            webhook_events_total.labels(event_type="unknown", outcome="authentication_failed").inc()
            raise
        result = await self.reconcile(event)
        webhook_events_total.labels(event_type=result.event_type, outcome=result.outcome.value).inc()
        return result

    async def reconcile(self, event: Mapping[str, Any]) -> ReconcileResult:
        event_type = str(event.get("type") or "unknown")
        if event_type not in PAYMENT_EVENTS:
            logger.info("Ignoring payment event type=%s id=%s", event_type, event.get("id"))
            return ReconcileResult(ReconcileOutcome.IGNORED, event_type)

        try:
            session = self._checkout_session(event)
        except PermanentEventError as e:
            logger.error("Payment event %s needs manual reconciliation: %s", event.get("id"), e.message)
            return ReconcileResult(ReconcileOutcome.PERMANENT_ERROR, event_type)

        order_id = session["metadata"]["order_id"]
        if session.get("payment_status") == "unpaid":
            logger.info("Checkout session %s for order %s completed unpaid; waiting for %s",
                        session.get("id"), order_id, ASYNC_PAYMENT_SUCCEEDED)
            return ReconcileResult(ReconcileOutcome.IGNORED, event_type, order_id)

        return await self._mark_paid(event, event_type, session, order_id)

    @staticmethod
    def _checkout_session(event: Mapping[str, Any]) -> dict:
        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(session, dict):
            raise PermanentEventError(f"{event.get('type')} without a session object")
        metadata = session.get("metadata")
        order_id = metadata.get("order_id") if isinstance(metadata, dict) else None
        if not order_id or not isinstance(order_id, str):
            raise PermanentEventError(f"checkout session {session.get('id')} has no order_id metadata")
        return session

    async def _mark_paid(self, event: Mapping[str, Any], event_type: str, session: dict,
                         order_id: str) -> ReconcileResult:
        order = {"id": order_id, "status": OrderStatus.APPROVED_PENDING_PAYMENT.value}
        values = {
            "payment_status": PaymentStatus.PAID,
            "paid_at": NOW,
            "paid_via": "stripe",
        }
        if session.get("payment_intent"):
            values["stripe_payment_intent"] = str(session["payment_intent"])
        row = await commit_transition(
            self._store, order, OrderStatus.READY_FOR_DISPATCH,
            where={"payment_status": Not(PaymentStatus.PAID)},
            values=values,
        )
        if row is None:
            return await self._explain_miss(event, event_type, order_id)

        if row.get("stripe_session_id") and row["stripe_session_id"] != session.get("id"):
            logger.warning("Order %s paid through session %s, expected %s",
                           order_id, session.get("id"), row["stripe_session_id"])
        logger.info("Order %s marked paid (event %s)", order_id, event.get("id"))

        await self._queue.enqueue_safely(NOTIFY_PREFIX + "order_paid", {"order_id": order_id})
        if self._auto_assign:
            await self._queue.enqueue_safely(TASK_AUTO_ASSIGN, {"order_id": order_id})
        return ReconcileResult(ReconcileOutcome.APPLIED, event_type, order_id)

    async def _explain_miss(self, event: Mapping[str, Any], event_type: str, order_id: str) -> ReconcileResult:
        current = await self._store.get_order(order_id)
        if current is None:
            logger.error("Payment event %s references unknown order %s; manual reconciliation needed",
                         event.get("id"), order_id)
            return ReconcileResult(ReconcileOutcome.UNRECONCILED, event_type, order_id)
        if current["payment_status"] == PaymentStatus.PAID:
            logger.info("Duplicate payment event %s for order %s, already paid", event.get("id"), order_id)
            return ReconcileResult(ReconcileOutcome.DUPLICATE, event_type, order_id)
        logger.error("Payment event %s for order %s in status %s; manual reconciliation needed",
                     event.get("id"), order_id, current["status"])
        return ReconcileResult(ReconcileOutcome.UNRECONCILED, event_type, order_id)
