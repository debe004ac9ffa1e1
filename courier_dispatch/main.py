import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from courier_dispatch.config import settings
from courier_dispatch.container import Container, build_container
from courier_dispatch.errors import OrderError
from courier_dispatch.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from courier_dispatch.routes import admin, driver, orders, webhooks

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )


async def order_error_handler(request: Request, exc: OrderError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(container: Container | None = None) -> FastAPI:
    """With a prebuilt container (tests) the lifespan neither connects nor closes anything."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container is not None:
            app.state.container = container
            yield
            return
        configure_logging(settings.log_level)
        app.state.container = await build_container(settings)
        logger.info("Dispatch API ready (queue backend=%s)", app.state.container.queue.backend)
        try:
            yield
        finally:
            await app.state.container.close()

    app = FastAPI(title="Courier Dispatch", lifespan=lifespan)
    if container is not None:
        app.state.container = container
    app.add_exception_handler(OrderError, order_error_handler)
    app.include_router(orders.router)
    app.include_router(admin.router)
    app.include_router(driver.router)
    app.include_router(webhooks.router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics(request: Request) -> Response:
        """Prometheus scrape endpoint: transitions, webhook outcomes, SQS queue depth (when using SQS)."""
        sqs = request.app.state.container.sqs
        if sqs is not None:
            try:
                waiting, in_flight = await sqs.get_queue_depth()
                sqs_queue_messages_waiting.set(waiting)
                sqs_queue_messages_in_flight.set(in_flight)
            except Exception:
                logger.warning("Could not read SQS queue depth", exc_info=True)
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("courier_dispatch.main:app", host="0.0.0.0", port=8000)
