"""
Worker: pull side-effect tasks from Redis or AWS SQS and run them outside any order transaction.
- dispatch.auto_assign: push-assign a freshly paid order (no driver available is logged, not retried).
- notify.*: publish to the notification channel for external mailers.
- Redis: exponential backoff + manual DLQ. SQS: don't delete on failure; SQS redrive to DLQ after max receives.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m courier_dispatch.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

from courier_dispatch.config import settings
from courier_dispatch.container import Container, build_container
from courier_dispatch.errors import NotFound
from courier_dispatch.metrics import tasks_dlq_total, tasks_failed_total, tasks_processed_total
from courier_dispatch.queue import NOTIFY_PREFIX, TASK_AUTO_ASSIGN, TASK_QUEUE_KEY
from courier_dispatch.redis_client import publish_notification

logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


class TaskRunner:
    """Routes a decoded task body to its handler. Raises to signal a retryable failure."""

    def __init__(self, container: Container):
        self._container = container

    async def run(self, data: dict) -> None:
        kind = data.get("kind") or ""
        payload = data.get("payload") or {}
        if kind == TASK_AUTO_ASSIGN:
            await self._auto_assign(payload)
        elif kind.startswith(NOTIFY_PREFIX):
            await self._notify(kind[len(NOTIFY_PREFIX):], payload)
        else:
            logger.warning("Unknown task kind=%s task_id=%s, dropping", kind, data.get("task_id"))

    async def _auto_assign(self, payload: dict) -> None:
        order_id = payload.get("order_id")
        if not order_id:
            logger.warning("auto_assign task without order_id, dropping")
            return
        try:
            order = await self._container.dispatch.auto_assign(order_id)
        except NotFound:
            logger.error("auto_assign: order %s does not exist", order_id)
            return
        if order is not None:
            logger.info("auto_assign: order %s -> driver %s", order_id, order["assigned_driver_id"])

    async def _notify(self, event: str, payload: dict) -> None:
        message = {"event": event, **payload}
        await publish_notification(self._container.redis, self._container.settings.notification_channel, message)
        logger.info("Published %s notification for order %s", event, payload.get("order_id"))


async def process_one_redis(container: Container, runner: TaskRunner, raw: str, sem: asyncio.Semaphore) -> None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON from queue: %s", e)
        return
    task_id = data.get("task_id")
    kind = data.get("kind") or "unknown"
    attempts = data.get("attempts", 0)
    if not task_id:
        logger.warning("Message missing task_id, skipping")
        return

    async with sem:
        try:
            await runner.run(data)
            tasks_processed_total.labels(kind=kind).inc()
            logger.info("Processed task_id=%s kind=%s", task_id, kind)
        except Exception as e:
            tasks_failed_total.labels(kind=kind).inc()
            logger.exception("Failed to process task_id=%s (attempt %d): %s", task_id, attempts + 1, e)
            next_attempts = attempts + 1
            if next_attempts >= settings.worker_max_retries:
                await container.queue.push_dlq({
                    **data,
                    "attempts": next_attempts,
                    "last_error": str(e),
                    "failed_at": time.time(),
                })
                tasks_dlq_total.inc()
                logger.warning("Moved task_id=%s to DLQ after %d attempts", task_id, settings.worker_max_retries)
            else:
                backoff_sec = 2 ** attempts
                logger.info("Re-queuing task_id=%s in %ds (attempt %d/%d)", task_id, backoff_sec, next_attempts, settings.worker_max_retries)
                await asyncio.sleep(backoff_sec)
                await container.queue.push({**data, "attempts": next_attempts})


async def process_one_sqs(
    container: Container,
    runner: TaskRunner,
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
) -> None:
    sqs = container.sqs
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON from SQS")
        await asyncio.to_thread(sqs.delete_message, receipt_handle)
        return
    task_id = data.get("task_id")
    kind = data.get("kind") or "unknown"
    if not task_id:
        logger.warning("Message missing task_id, skipping")
        await asyncio.to_thread(sqs.delete_message, receipt_handle)
        return

    async with sem:
        try:
            await runner.run(data)
            tasks_processed_total.labels(kind=kind).inc()
            logger.info("Processed task_id=%s kind=%s", task_id, kind)
            await asyncio.to_thread(sqs.delete_message, receipt_handle)
        except Exception as e:
            tasks_failed_total.labels(kind=kind).inc()
            logger.exception("Failed to process task_id=%s (receive #%d): %s", task_id, receive_count, e)
            # Don't delete: message will reappear after visibility timeout; after max receives SQS moves to DLQ
            backoff = min(2 ** receive_count, 900)
            await asyncio.to_thread(sqs.change_message_visibility, receipt_handle, backoff)


async def _drain(tasks: set[asyncio.Task]) -> None:
    if tasks:
        logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
        _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(container: Container, shutdown_event: asyncio.Event) -> None:
    runner = TaskRunner(container)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        TASK_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await container.redis.brpop(TASK_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(container, runner, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)


async def run_worker_sqs(container: Container, shutdown_event: asyncio.Event) -> None:
    runner = TaskRunner(container)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=SQS. Queue=%s (concurrency=%d) ...",
        container.sqs.queue_url,
        settings.worker_concurrency,
    )
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(container.sqs.receive_messages, 10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(container, runner, body, receipt, receive_count, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)


async def run_worker(shutdown_event: asyncio.Event) -> None:
    container = await build_container(settings)
    try:
        if container.sqs is not None:
            await run_worker_sqs(container, shutdown_event)
        else:
            await run_worker_redis(container, shutdown_event)
    finally:
        await container.close()
        logger.info("Worker stopped.")


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
