"""
Push side-effect tasks (auto-assign, notifications) to a queue, decoupled from the order transaction.
Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
"""
import json
import logging
import time
import uuid

import redis.asyncio as redis

from courier_dispatch.sqs_client import SqsClient

logger = logging.getLogger(__name__)

TASK_QUEUE_KEY = "queue:dispatch_tasks"
TASK_DLQ_KEY = "queue:dispatch_tasks:dlq"

TASK_AUTO_ASSIGN = "dispatch.auto_assign"
NOTIFY_PREFIX = "notify."


def make_task(kind: str, payload: dict, attempts: int = 0, task_id: str | None = None) -> dict:
    return {
        "task_id": task_id or str(uuid.uuid4()),
        "kind": kind,
        "payload": payload,
        "attempts": attempts,
        "enqueued_at": time.time(),
    }


class TaskQueue:
    def __init__(self, r: redis.Redis | None = None, sqs: SqsClient | None = None):
        if r is None and sqs is None:
            raise ValueError("TaskQueue needs a Redis client or an SQS client")
        self._redis = r
        self._sqs = sqs

    @property
    def backend(self) -> str:
        return "sqs" if self._sqs is not None else "redis"

    async def push(self, body: dict) -> None:
        if self._sqs is not None:
            await self._sqs.send_message(body)
        else:
            await self._redis.lpush(TASK_QUEUE_KEY, json.dumps(body, default=str))

    async def enqueue(self, kind: str, payload: dict) -> None:
        await self.push(make_task(kind, payload))

    async def enqueue_safely(self, kind: str, payload: dict) -> bool:
        """Enqueue a secondary effect; failures are logged and never reach the caller's transition."""
        try:
            await self.enqueue(kind, payload)
            return True
        except Exception:
            logger.exception("Failed to enqueue %s task payload=%s", kind, payload)
            return False

    async def push_dlq(self, body: dict) -> None:
        await self._redis.lpush(TASK_DLQ_KEY, json.dumps(body, default=str))

    async def replay_dlq(self, limit: int = 100) -> int:
        """
        Move up to limit dead tasks back to the main queue with attempts reset.
        A task leaves the DLQ only after it is on the main queue; unusable entries are dropped uncounted.
        """
        if self._sqs is not None:
            return await self._sqs.replay_dlq(limit=limit)
        replayed = 0
        while replayed < limit:
            raw = await self._redis.lindex(TASK_DLQ_KEY, -1)
            if raw is None:
                break
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = None
            if not isinstance(data, dict) or not data.get("task_id") or not data.get("kind"):
                logger.warning("Dropping unusable DLQ entry")
                await self._redis.lrem(TASK_DLQ_KEY, -1, raw)
                continue
            data.pop("last_error", None)
            data.pop("failed_at", None)
            await self.push({**data, "attempts": 0})
            await self._redis.lrem(TASK_DLQ_KEY, -1, raw)
            replayed += 1
        return replayed
