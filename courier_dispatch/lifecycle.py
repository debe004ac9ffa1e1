"""
Shared write path for every order status change: validate against the transition table,
then commit with the observed status in the predicate so the check is repeated at write time.
"""
import logging
from typing import Any, Mapping, Protocol

from courier_dispatch.db import NOW
from courier_dispatch.errors import InvalidTransition, NotFound
from courier_dispatch.metrics import order_transitions_rejected_total, order_transitions_total
from courier_dispatch.order_state import OrderStatus, PaymentStatus, allowed_transitions, check_transition

logger = logging.getLogger(__name__)


class OrderRepository(Protocol):
    async def insert_order(self, values: Mapping[str, Any]) -> dict: ...

    async def get_order(self, order_id: str) -> dict | None: ...

    async def update_where(self, order_id: str, where: Mapping[str, Any],
                           values: Mapping[str, Any]) -> dict | None: ...

    async def list_orders(self, statuses: list[str] | None = None, limit: int = 100) -> list[dict]: ...

    async def list_for_driver(self, driver_id: str) -> list[dict]: ...


async def require_order(store: OrderRepository, order_id: str) -> dict:
    order = await store.get_order(order_id)
    if order is None:
        raise NotFound("Order", order_id)
    return order


async def commit_transition(
    store: OrderRepository,
    order: Mapping[str, Any],
    target: OrderStatus,
    where: Mapping[str, Any] | None = None,
    values: Mapping[str, Any] | None = None,
) -> dict | None:
    """
    Move order (as last read) to target. Raises InvalidTransition before touching storage.
    Returns the updated row, or None when the row changed since it was read.
    """
    current = order["status"]
    try:
        check_transition(current, target)
    except InvalidTransition:
        order_transitions_rejected_total.labels(to_status=target.value, reason="invalid").inc()
        raise
    predicate = {"status": current, **(where or {})}
    row = await store.update_where(order["id"], predicate, {"status": target, **(values or {})})
    if row is None:
        order_transitions_rejected_total.labels(to_status=target.value, reason="lost_race").inc()
        logger.info("Order %s changed concurrently; %s -> %s not applied", order["id"], current, target.value)
        return None
    order_transitions_total.labels(from_status=str(current), to_status=target.value).inc()
    logger.info("Order %s: %s -> %s", order["id"], current, target.value)
    return row


def order_view(order: Mapping[str, Any]) -> dict:
    """Order row plus the states a client may request next."""
    return {**order, "allowed_transitions": allowed_transitions(order["status"])}


async def create_order(store: OrderRepository, fields: Mapping[str, Any],
                       prepaid_note: str | None = None) -> dict:
    """
    Customer orders start in pending_admin_review. An admin-created order with a prepaid note
    skips review and payment and enters dispatch directly.
    """
    values = dict(fields)
    if prepaid_note:
        values.update({
            "status": OrderStatus.READY_FOR_DISPATCH,
            "payment_status": PaymentStatus.PAID,
            "paid_via": "manual",
            "payment_note": prepaid_note,
            "paid_at": NOW,
        })
    else:
        values.update({"status": OrderStatus.PENDING_ADMIN_REVIEW, "payment_status": PaymentStatus.UNPAID})
    order = await store.insert_order(values)
    logger.info("Order %s created (%s, status=%s)", order["id"], order["service_type"], order["status"])
    return order
