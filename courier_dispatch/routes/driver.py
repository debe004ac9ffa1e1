import logging

from fastapi import APIRouter, Depends

from courier_dispatch.container import Container
from courier_dispatch.deps import bearer_token, get_container, require_driver
from courier_dispatch.errors import NotFound
from courier_dispatch.lifecycle import order_view
from courier_dispatch.schemas import DriverLoginBody, LocationBody, ProofBody

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/driver", tags=["driver"])


@router.post("/login")
async def login(body: DriverLoginBody, container: Container = Depends(get_container)) -> dict:
    """Identity is proven upstream (access proxy); this binds the driver to a revocable session token."""
    driver = await container.drivers.get_driver_by_email(body.email.strip())
    if driver is None:
        raise NotFound("Driver", body.email)
    token = await container.drivers.create_session(driver["id"])
    logger.info("Driver %s logged in", driver["id"])
    return {"token": token, "driver_id": driver["id"], "verified": driver["verified"]}


@router.post("/logout")
async def logout(token: str = Depends(bearer_token), container: Container = Depends(get_container)) -> dict:
    revoked = await container.drivers.revoke_session(token)
    return {"revoked": revoked}


@router.get("/orders")
async def my_orders(driver: dict = Depends(require_driver), container: Container = Depends(get_container)) -> dict:
    orders = await container.dispatch.available_orders(driver)
    return {"orders": [order_view(o) for o in orders]}


@router.post("/orders/{order_id}/accept")
async def accept(order_id: str, driver: dict = Depends(require_driver),
                 container: Container = Depends(get_container)) -> dict:
    return order_view(await container.dispatch.accept(order_id, driver))


@router.post("/orders/{order_id}/proof")
async def record_proof(order_id: str, body: ProofBody, driver: dict = Depends(require_driver),
                       container: Container = Depends(get_container)) -> dict:
    order = await container.progress.record_proof(order_id, driver["id"], body.kind, photo_url=body.photo_url)
    return order_view(order)


@router.post("/orders/{order_id}/start")
async def start(order_id: str, driver: dict = Depends(require_driver),
                container: Container = Depends(get_container)) -> dict:
    return order_view(await container.progress.start(order_id, driver["id"]))


@router.post("/orders/{order_id}/complete")
async def complete(order_id: str, driver: dict = Depends(require_driver),
                   container: Container = Depends(get_container)) -> dict:
    return order_view(await container.progress.complete(order_id, driver["id"]))


@router.post("/location")
async def location(body: LocationBody, driver: dict = Depends(require_driver),
                   container: Container = Depends(get_container)) -> dict:
    await container.progress.record_location(driver["id"], body.lat, body.lng, order_id=body.order_id)
    return {"ok": True}
