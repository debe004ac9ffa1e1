"""
Process-scoped dependencies: built once at startup (API lifespan or worker), closed at shutdown.
"""
from dataclasses import dataclass
from typing import Any

from courier_dispatch.admin_actions import AdminActions
from courier_dispatch.config import Settings
from courier_dispatch.db import OrderStore, create_pool, init_schema
from courier_dispatch.dispatch import DispatchEngine
from courier_dispatch.drivers import DriverDirectory
from courier_dispatch.payments import PaymentReconciler, StripeGateway
from courier_dispatch.progress import ProgressTracker
from courier_dispatch.queue import TaskQueue
from courier_dispatch.redis_client import close_redis, create_redis
from courier_dispatch.sqs_client import SqsClient


@dataclass
class Container:
    settings: Settings
    orders: Any
    drivers: Any
    queue: TaskQueue
    gateway: StripeGateway
    reconciler: PaymentReconciler
    dispatch: DispatchEngine
    progress: ProgressTracker
    admin: AdminActions
    pool: Any = None
    redis: Any = None
    sqs: SqsClient | None = None

    @classmethod
    def wire(cls, settings: Settings, orders, drivers, queue, gateway, **resources) -> "Container":
        return cls(
            settings=settings,
            orders=orders,
            drivers=drivers,
            queue=queue,
            gateway=gateway,
            reconciler=PaymentReconciler(orders, gateway, queue, auto_assign=settings.auto_assign_on_payment),
            dispatch=DispatchEngine(orders, drivers, queue),
            progress=ProgressTracker(orders, drivers, queue),
            admin=AdminActions(orders, gateway, queue),
            **resources,
        )

    async def close(self) -> None:
        await close_redis(self.redis)
        self.redis = None
        if self.pool is not None:
            await self.pool.close()
            self.pool = None


async def build_container(settings: Settings) -> Container:
    pool = await create_pool(settings.database_url)
    await init_schema(pool)
    r = create_redis(settings.redis_url)
    sqs = None
    if settings.sqs_queue_url:
        sqs = SqsClient(settings.aws_region, settings.sqs_queue_url, settings.sqs_dlq_url)
    gateway = StripeGateway(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
        tolerance=settings.stripe_webhook_tolerance,
    )
    return Container.wire(
        settings,
        orders=OrderStore(pool),
        drivers=DriverDirectory(pool),
        queue=TaskQueue(r=r, sqs=sqs),
        gateway=gateway,
        pool=pool,
        redis=r,
        sqs=sqs,
    )
