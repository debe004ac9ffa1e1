"""
Dispatch assignment: pull (driver accepts an open order) and push (admin or auto-assign picks a driver).
Both modes go through _claim, a single conditional update; whichever commits first wins and the
other sees zero rows and gets Conflict.
"""
import logging
from typing import Any, Mapping, Protocol

from courier_dispatch.db import NOW
from courier_dispatch.errors import Conflict, Forbidden, NoDriverAvailable, NotFound, NotVerified
from courier_dispatch.lifecycle import OrderRepository, commit_transition, require_order
from courier_dispatch.metrics import assignments_total
from courier_dispatch.order_state import OrderStatus, PaymentStatus, allowed_transitions
from courier_dispatch.queue import NOTIFY_PREFIX, TaskQueue

logger = logging.getLogger(__name__)


class DriverRepository(Protocol):
    async def get_driver(self, driver_id: str) -> dict | None: ...

    async def next_for_dispatch(self) -> dict | None: ...

    async def stamp_last_assigned(self, driver_id: str) -> None: ...


def ensure_eligible(driver: Mapping[str, Any]) -> None:
    if not driver["active"]:
        raise Forbidden(f"Driver '{driver['id']}' is inactive")
    if not driver["verified"]:
        raise NotVerified(driver["id"])


class DispatchEngine:
    def __init__(self, store: OrderRepository, drivers: DriverRepository, queue: TaskQueue):
        self._store = store
        self._drivers = drivers
        self._queue = queue

    async def available_orders(self, driver: Mapping[str, Any]) -> list[dict]:
        """What a polling driver sees: open ready_for_dispatch orders plus their own active ones."""
        ensure_eligible(driver)
        return await self._store.list_for_driver(driver["id"])

    async def accept(self, order_id: str, driver: Mapping[str, Any]) -> dict:
        """Pull mode. Lost races raise Conflict; the caller should re-poll."""
        ensure_eligible(driver)
        return await self._claim(order_id, driver["id"], mode="pull")

    async def assign(self, order_id: str, driver_id: str | None = None, mode: str = "push") -> dict:
        """Push mode: explicit driver, or the least recently assigned eligible one."""
        if driver_id is not None:
            driver = await self._drivers.get_driver(driver_id)
            if driver is None:
                raise NotFound("Driver", driver_id)
        else:
            driver = await self._drivers.next_for_dispatch()
            if driver is None:
                assignments_total.labels(mode=mode, outcome="no_driver").inc()
                raise NoDriverAvailable()
        ensure_eligible(driver)
        return await self._claim(
            order_id, driver["id"], mode=mode,
            where={"payment_status": PaymentStatus.PAID},
        )

    async def auto_assign(self, order_id: str) -> dict | None:
        """Best-effort follow-on to payment. Returns None when nothing could be assigned."""
        try:
            return await self.assign(order_id, mode="auto")
        except NoDriverAvailable:
            logger.warning("Auto-assign: no eligible driver for order %s; left for pull/admin dispatch", order_id)
        except Conflict as e:
            logger.info("Auto-assign: order %s already claimed (%s)", order_id, e.message)
        return None

    async def _claim(self, order_id: str, driver_id: str, mode: str,
                     where: Mapping[str, Any] | None = None) -> dict:
        order = await require_order(self._store, order_id)
        replay = self._already_claimed(order, driver_id, mode)
        if replay is not None:
            return replay

        row = await commit_transition(
            self._store, order, OrderStatus.ASSIGNED,
            where={"assigned_driver_id": None, **(where or {})},
            values={"assigned_driver_id": driver_id, "assigned_at": NOW},
        )
        if row is None:
            current = await require_order(self._store, order_id)
            replay = self._already_claimed(current, driver_id, mode)
            if replay is not None:
                return replay
            assignments_total.labels(mode=mode, outcome="conflict").inc()
            raise Conflict(
                f"Order '{order_id}' is no longer available",
                current=current["status"], allowed=allowed_transitions(current["status"]),
            )

        assignments_total.labels(mode=mode, outcome="assigned").inc()
        logger.info("Order %s assigned to driver %s (%s)", order_id, driver_id, mode)
        await self._stamp_driver(driver_id)
        await self._queue.enqueue_safely(
            NOTIFY_PREFIX + "order_assigned", {"order_id": order_id, "driver_id": driver_id}
        )
        return row

    @staticmethod
    def _already_claimed(order: Mapping[str, Any], driver_id: str, mode: str) -> dict | None:
        """None if the order is still claimable; the order itself for a same-driver replay; else Conflict."""
        holder = order.get("assigned_driver_id")
        if holder is None:
            return None
        if holder == driver_id and order["status"] == OrderStatus.ASSIGNED:
            logger.info("Order %s already assigned to driver %s; replay is a no-op", order["id"], driver_id)
            return dict(order)
        assignments_total.labels(mode=mode, outcome="conflict").inc()
        raise Conflict(
            f"Order '{order['id']}' is already assigned",
            current=order["status"], allowed=allowed_transitions(order["status"]),
        )

    async def _stamp_driver(self, driver_id: str) -> None:
        try:
            await self._drivers.stamp_last_assigned(driver_id)
        except Exception:
            logger.exception("Failed to stamp last_assigned_at for driver %s; assignment stands", driver_id)
