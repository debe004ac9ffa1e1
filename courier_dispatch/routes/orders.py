from fastapi import APIRouter, Depends, status

from courier_dispatch.container import Container
from courier_dispatch.deps import get_container
from courier_dispatch.lifecycle import create_order, order_view, require_order
from courier_dispatch.schemas import CreateOrderBody

router = APIRouter(prefix="/orders", tags=["orders"])

PUBLIC_FIELDS = (
    "id", "service_type", "status", "payment_status", "pickup_address", "delivery_address",
    "scheduled_date", "scheduled_time", "total_amount", "currency", "checkout_url",
    "created_at", "paid_at", "assigned_at", "en_route_at", "delivered_at",
)


def _public(order: dict) -> dict:
    view = order_view(order)
    return {k: view.get(k) for k in (*PUBLIC_FIELDS, "allowed_transitions")}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create(body: CreateOrderBody, container: Container = Depends(get_container)) -> dict:
    """Customer-facing order creation. Orders always start in pending_admin_review."""
    fields = body.model_dump()
    fields["currency"] = fields["currency"] or container.settings.default_currency
    order = await create_order(container.orders, fields)
    return _public(order)


@router.get("/{order_id}")
async def get_order(order_id: str, container: Container = Depends(get_container)) -> dict:
    """Current status plus the states reachable next."""
    return _public(await require_order(container.orders, order_id))
