from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from courier_dispatch.container import Container
from courier_dispatch.deps import get_container
from courier_dispatch.errors import AuthenticationFailed

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    container: Container = Depends(get_container),
) -> JSONResponse:
    """
    Payment provider callback. Reads the raw body (signature is over the exact bytes).
    Bad signature -> 400. Every verified event, including ones we ignore, -> 200 so the provider
    stops redelivering.
    """
    payload = await request.body()
    try:
        result = await container.reconciler.handle_webhook(payload, stripe_signature)
    except AuthenticationFailed as e:
        return JSONResponse(status_code=400, content=e.to_dict())
    return JSONResponse(
        status_code=200,
        content={"received": True, "outcome": result.outcome.value, "order_id": result.order_id},
    )
