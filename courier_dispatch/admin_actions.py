"""
Admin action gateway: the only path from manual review into the payable state, plus reject and
manual pay override.
"""
import logging
from decimal import Decimal

from courier_dispatch.db import NOW, Not
from courier_dispatch.errors import Conflict, OrderError
from courier_dispatch.lifecycle import OrderRepository, commit_transition, require_order
from courier_dispatch.order_state import OrderStatus, PaymentStatus, allowed_transitions, check_transition
from courier_dispatch.payments import StripeGateway
from courier_dispatch.queue import NOTIFY_PREFIX, TaskQueue

logger = logging.getLogger(__name__)


def _lost_race(order_id: str, current: dict) -> Conflict:
    return Conflict(
        f"Order '{order_id}' changed concurrently",
        current=current["status"], allowed=allowed_transitions(current["status"]),
    )


class AdminActions:
    def __init__(self, store: OrderRepository, gateway: StripeGateway, queue: TaskQueue):
        self._store = store
        self._gateway = gateway
        self._queue = queue

    async def approve(self, order_id: str, total_amount: Decimal | None = None) -> dict:
        """
        pending_admin_review -> approved_pending_payment.
        The checkout session is created first; if that fails the order is not touched.
        """
        order = await require_order(self._store, order_id)
        check_transition(order["status"], OrderStatus.APPROVED_PENDING_PAYMENT)
        amount = total_amount if total_amount is not None else order["total_amount"]

        session = await self._gateway.create_checkout_session(
            order_id=order_id,
            amount=amount,
            currency=order["currency"],
            customer_email=order.get("customer_email"),
            description=f"{order['service_type'].capitalize()} service - Order {order_id[:8]}",
        )
        row = await commit_transition(
            self._store, order, OrderStatus.APPROVED_PENDING_PAYMENT,
            where={"payment_status": Not(PaymentStatus.PAID)},
            values={
                "total_amount": amount,
                "stripe_session_id": session.session_id,
                "checkout_url": session.url,
                "approved_at": NOW,
            },
        )
        if row is None:
            await self._discard_session(session.session_id, order_id)
            current = await require_order(self._store, order_id)
            check_transition(current["status"], OrderStatus.APPROVED_PENDING_PAYMENT)
            raise _lost_race(order_id, current)

        await self._queue.enqueue_safely(
            NOTIFY_PREFIX + "payment_link",
            {"order_id": order_id, "checkout_url": session.url, "customer_email": row.get("customer_email")},
        )
        return row

    async def reject(self, order_id: str, reason: str | None = None) -> dict:
        """Terminal. Allowed before payment only."""
        order = await require_order(self._store, order_id)
        row = await commit_transition(
            self._store, order, OrderStatus.REJECTED,
            where={"payment_status": Not(PaymentStatus.PAID)},
            values={"rejected_at": NOW, "rejection_reason": reason},
        )
        if row is None:
            current = await require_order(self._store, order_id)
            check_transition(current["status"], OrderStatus.REJECTED)
            raise _lost_race(order_id, current)
        await self._queue.enqueue_safely(NOTIFY_PREFIX + "order_rejected", {"order_id": order_id})
        return row

    async def mark_paid(self, order_id: str, note: str) -> dict:
        """Manual pay override. Bypasses the reconciler, so it repeats the already-paid guard itself."""
        if not note or not note.strip():
            raise ValueError("A justification note is required for manual payment")
        order = await require_order(self._store, order_id)
        self._ensure_unpaid(order)
        row = await commit_transition(
            self._store, order, OrderStatus.READY_FOR_DISPATCH,
            where={"payment_status": Not(PaymentStatus.PAID)},
            values={
                "payment_status": PaymentStatus.PAID,
                "paid_via": "manual",
                "payment_note": note.strip(),
                "paid_at": NOW,
            },
        )
        if row is None:
            current = await require_order(self._store, order_id)
            self._ensure_unpaid(current)
            check_transition(current["status"], OrderStatus.READY_FOR_DISPATCH)
            raise _lost_race(order_id, current)
        logger.info("Order %s marked paid manually", order_id)
        await self._queue.enqueue_safely(NOTIFY_PREFIX + "order_paid", {"order_id": order_id})
        return row

    @staticmethod
    def _ensure_unpaid(order: dict) -> None:
        if order["payment_status"] == PaymentStatus.PAID:
            raise Conflict(
                f"Order '{order['id']}' is already paid",
                current=order["status"], allowed=allowed_transitions(order["status"]),
            )

    async def _discard_session(self, session_id: str, order_id: str) -> None:
        try:
            await self._gateway.expire_checkout_session(session_id)
        except OrderError:
            logger.warning("Could not expire orphaned checkout session %s for order %s", session_id, order_id)
