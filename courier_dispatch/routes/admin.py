from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from courier_dispatch.container import Container
from courier_dispatch.deps import ADMIN, OPS, get_container, require_role
from courier_dispatch.errors import NotFound
from courier_dispatch.lifecycle import create_order, order_view
from courier_dispatch.order_state import OrderStatus, TERMINAL_STATES
from courier_dispatch.schemas import (
    AdminCreateOrderBody,
    ApproveBody,
    AssignBody,
    CreateDriverBody,
    MarkPaidBody,
    RejectBody,
    UpdateDriverBody,
)

router = APIRouter(prefix="/admin", tags=["admin"])

admin_only = Depends(require_role(ADMIN))
admin_or_ops = Depends(require_role(ADMIN, OPS))

# dashboard lane -> statuses
LANES = {
    "action_required": [OrderStatus.PENDING_ADMIN_REVIEW],
    "awaiting_payment": [OrderStatus.APPROVED_PENDING_PAYMENT],
    "dispatch": [OrderStatus.READY_FOR_DISPATCH],
    "active": [OrderStatus.ASSIGNED, OrderStatus.EN_ROUTE],
}


@router.get("/orders", dependencies=[admin_or_ops])
async def list_orders(
    status_filter: list[str] | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    container: Container = Depends(get_container),
) -> dict:
    try:
        statuses = [OrderStatus.parse(s).value for s in status_filter] if status_filter else None
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown status in {status_filter}")
    orders = await container.orders.list_orders(statuses, limit=limit)
    return {"orders": [order_view(o) for o in orders]}


@router.get("/dashboard", dependencies=[admin_or_ops])
async def dashboard(container: Container = Depends(get_container)) -> dict:
    """Open orders grouped by what the operator has to do next."""
    open_statuses = [s.value for s in OrderStatus if s not in TERMINAL_STATES]
    orders = await container.orders.list_orders(open_statuses, limit=1000)
    lanes: dict[str, list[dict]] = {lane: [] for lane in LANES}
    for order in orders:
        for lane, statuses in LANES.items():
            if order["status"] in statuses:
                lanes[lane].append(order)
    return {"stats": {lane: len(items) for lane, items in lanes.items()}, "lanes": lanes}


@router.post("/orders", status_code=status.HTTP_201_CREATED, dependencies=[admin_only])
async def create_admin_order(body: AdminCreateOrderBody, container: Container = Depends(get_container)) -> dict:
    fields = body.model_dump(exclude={"prepaid_note"})
    fields["currency"] = fields["currency"] or container.settings.default_currency
    order = await create_order(container.orders, fields, prepaid_note=body.prepaid_note)
    return order_view(order)


@router.post("/orders/{order_id}/approve", dependencies=[admin_only])
async def approve(order_id: str, body: ApproveBody | None = None,
                  container: Container = Depends(get_container)) -> dict:
    amount = body.total_amount if body else None
    return order_view(await container.admin.approve(order_id, total_amount=amount))


@router.post("/orders/{order_id}/reject", dependencies=[admin_only])
async def reject(order_id: str, body: RejectBody | None = None,
                 container: Container = Depends(get_container)) -> dict:
    return order_view(await container.admin.reject(order_id, reason=body.reason if body else None))


@router.post("/orders/{order_id}/mark-paid", dependencies=[admin_only])
async def mark_paid(order_id: str, body: MarkPaidBody, container: Container = Depends(get_container)) -> dict:
    return order_view(await container.admin.mark_paid(order_id, note=body.note))


@router.post("/orders/{order_id}/assign", dependencies=[admin_or_ops])
async def assign(order_id: str, body: AssignBody | None = None,
                 container: Container = Depends(get_container)) -> dict:
    driver_id = body.driver_id if body else None
    return order_view(await container.dispatch.assign(order_id, driver_id=driver_id))


@router.post("/drivers", status_code=status.HTTP_201_CREATED, dependencies=[admin_only])
async def create_driver(body: CreateDriverBody, container: Container = Depends(get_container)) -> dict:
    return await container.drivers.create_driver(**body.model_dump())


@router.patch("/drivers/{driver_id}", dependencies=[admin_only])
async def update_driver(driver_id: str, body: UpdateDriverBody,
                        container: Container = Depends(get_container)) -> dict:
    driver = await container.drivers.update_driver(driver_id, body.model_dump(exclude_none=True))
    if driver is None:
        raise NotFound("Driver", driver_id)
    return driver


@router.post("/dlq/replay", dependencies=[admin_only])
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000),
                     container: Container = Depends(get_container)) -> JSONResponse:
    """
    Replay dead side-effect tasks to the main queue.
    Each DLQ message is re-sent to the main queue and deleted from DLQ.
    Returns number of messages replayed.
    """
    replayed = await container.queue.replay_dlq(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )
