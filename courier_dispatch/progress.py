"""
Driver progress: assigned -> en_route -> completed, each step gated on a recorded proof artifact.
Every write is scoped to assigned_driver_id = calling driver.
"""
import logging

from courier_dispatch.db import NOW, Not
from courier_dispatch.errors import Conflict, Forbidden, ProofOutOfOrder, ProofRequired
from courier_dispatch.lifecycle import OrderRepository, commit_transition, require_order
from courier_dispatch.order_state import OrderStatus, allowed_transitions
from courier_dispatch.queue import NOTIFY_PREFIX, TaskQueue

logger = logging.getLogger(__name__)

PICKUP = "pickup"
DELIVERY = "delivery"

# proof kind -> (status it may be recorded in, url column, timestamp column)
PROOF_COLUMNS = {
    PICKUP: (OrderStatus.ASSIGNED, "pickup_photo_url", "pickup_proof_at"),
    DELIVERY: (OrderStatus.EN_ROUTE, "delivery_photo_url", "delivery_proof_at"),
}

# target -> (proof kind, audit column)
STEPS = {
    OrderStatus.EN_ROUTE: (PICKUP, "en_route_at"),
    OrderStatus.COMPLETED: (DELIVERY, "delivered_at"),
}


class ProgressTracker:
    def __init__(self, store: OrderRepository, drivers, queue: TaskQueue):
        self._store = store
        self._drivers = drivers
        self._queue = queue

    async def _owned_order(self, order_id: str, driver_id: str) -> dict:
        order = await require_order(self._store, order_id)
        if order.get("assigned_driver_id") != driver_id:
            raise Forbidden("Order is not assigned to this driver")
        return order

    async def record_proof(self, order_id: str, driver_id: str, kind: str,
                           photo_url: str | None = None) -> dict:
        """Record a pickup/delivery artifact (photo URL or explicit confirmation). Write-once."""
        status, url_column, at_column = PROOF_COLUMNS[kind]
        order = await self._owned_order(order_id, driver_id)
        if order.get(at_column) is not None:
            logger.info("Order %s already has %s proof; keeping the first one", order_id, kind)
            return order
        if order["status"] != status:
            raise ProofOutOfOrder(kind, current=order["status"], required=status.value,
                                  allowed=allowed_transitions(order["status"]))
        row = await self._store.update_where(
            order_id,
            {"status": status, "assigned_driver_id": driver_id, at_column: None},
            {url_column: photo_url, at_column: NOW},
        )
        if row is None:
            current = await self._owned_order(order_id, driver_id)
            if current.get(at_column) is not None:
                return current
            raise Conflict(
                f"Order '{order_id}' changed while recording {kind} proof",
                current=current["status"], allowed=allowed_transitions(current["status"]),
            )
        logger.info("Order %s: %s proof recorded by driver %s", order_id, kind, driver_id)
        return row

    async def start(self, order_id: str, driver_id: str) -> dict:
        row, _ = await self._advance(order_id, driver_id, OrderStatus.EN_ROUTE)
        return row

    async def complete(self, order_id: str, driver_id: str) -> dict:
        row, applied = await self._advance(order_id, driver_id, OrderStatus.COMPLETED)
        if applied:
            await self._queue.enqueue_safely(NOTIFY_PREFIX + "order_completed", {"order_id": order_id})
        return row

    async def _advance(self, order_id: str, driver_id: str, target: OrderStatus) -> tuple[dict, bool]:
        kind, audit_column = STEPS[target]
        _, _, proof_column = PROOF_COLUMNS[kind]
        order = await self._owned_order(order_id, driver_id)
        if order["status"] == target:
            logger.info("Order %s already %s; replay is a no-op", order_id, target.value)
            return order, False
        if order["status"] == PROOF_COLUMNS[kind][0] and order.get(proof_column) is None:
            raise ProofRequired(kind, order["status"])

        row = await commit_transition(
            self._store, order, target,
            where={"assigned_driver_id": driver_id, proof_column: Not(None)},
            values={audit_column: NOW},
        )
        if row is None:
            current = await self._owned_order(order_id, driver_id)
            if current["status"] == target:
                return current, False
            raise Conflict(
                f"Order '{order_id}' changed concurrently",
                current=current["status"], allowed=allowed_transitions(current["status"]),
            )
        return row, True

    async def record_location(self, driver_id: str, latitude: float, longitude: float,
                              order_id: str | None = None) -> None:
        """Append-only telemetry; never touches order state."""
        await self._drivers.record_location(driver_id, latitude, longitude, order_id)
