"""
Worker: task routing, retry with backoff, DLQ after max retries, and DLQ replay.
"""
import asyncio
import json

import pytest
import redis.exceptions

from _helper import FakeRedis, new_driver, queued_tasks, ready_order
from courier_dispatch.config import settings
from courier_dispatch.queue import TASK_AUTO_ASSIGN, TASK_DLQ_KEY, TASK_QUEUE_KEY, TaskQueue, make_task
from courier_dispatch.worker import TaskRunner, process_one_redis


class ExplodingRunner:
    async def run(self, data: dict) -> None:
        raise RuntimeError("mailer down")


@pytest.mark.asyncio
async def test_notification_is_published(container):
    runner = TaskRunner(container)

    await runner.run(make_task("notify.order_paid", {"order_id": "ord-1"}))

    channel, raw = container.redis.published[-1]
    assert channel == container.settings.notification_channel
    assert json.loads(raw) == {"event": "order_paid", "order_id": "ord-1"}


@pytest.mark.asyncio
async def test_auto_assign_task_assigns_driver(container):
    driver = await new_driver(container)
    order = await ready_order(container)

    await TaskRunner(container).run(make_task(TASK_AUTO_ASSIGN, {"order_id": order["id"]}))

    stored = await container.orders.get_order(order["id"])
    assert stored["status"] == "assigned"
    assert stored["assigned_driver_id"] == driver["id"]


@pytest.mark.asyncio
async def test_auto_assign_without_drivers_leaves_order_for_dispatch(container):
    order = await ready_order(container)

    await TaskRunner(container).run(make_task(TASK_AUTO_ASSIGN, {"order_id": order["id"]}))

    assert (await container.orders.get_order(order["id"]))["status"] == "ready_for_dispatch"


@pytest.mark.asyncio
async def test_auto_assign_for_missing_order_is_dropped(container):
    await TaskRunner(container).run(make_task(TASK_AUTO_ASSIGN, {"order_id": "gone"}))


@pytest.mark.asyncio
async def test_unknown_kind_is_dropped(container):
    await TaskRunner(container).run(make_task("billing.refund", {"order_id": "ord-1"}))
    assert container.redis.published == []


@pytest.mark.asyncio
async def test_successful_task_is_not_requeued(container):
    raw = json.dumps(make_task("notify.order_completed", {"order_id": "ord-1"}))

    await process_one_redis(container, TaskRunner(container), raw, asyncio.Semaphore(1))

    assert queued_tasks(container.redis) == []
    assert len(container.redis.published) == 1


@pytest.mark.asyncio
async def test_failed_task_is_requeued_with_attempt_count(container):
    task = make_task("notify.order_paid", {"order_id": "ord-1"})

    await process_one_redis(container, ExplodingRunner(), json.dumps(task), asyncio.Semaphore(1))

    requeued = queued_tasks(container.redis)
    assert len(requeued) == 1
    assert requeued[0]["task_id"] == task["task_id"]
    assert requeued[0]["attempts"] == 1


@pytest.mark.asyncio
async def test_task_goes_to_dlq_after_max_retries(container):
    task = make_task("notify.order_paid", {"order_id": "ord-1"}, attempts=settings.worker_max_retries - 1)

    await process_one_redis(container, ExplodingRunner(), json.dumps(task), asyncio.Semaphore(1))

    assert queued_tasks(container.redis) == []
    dead = queued_tasks(container.redis, TASK_DLQ_KEY)
    assert len(dead) == 1
    assert dead[0]["attempts"] == settings.worker_max_retries
    assert dead[0]["last_error"] == "mailer down"


@pytest.mark.asyncio
async def test_garbage_messages_are_skipped(container):
    await process_one_redis(container, ExplodingRunner(), "not json", asyncio.Semaphore(1))
    await process_one_redis(container, ExplodingRunner(), json.dumps({"kind": "notify.x"}), asyncio.Semaphore(1))
    assert queued_tasks(container.redis) == []
    assert queued_tasks(container.redis, TASK_DLQ_KEY) == []


@pytest.mark.asyncio
async def test_dlq_replay_resets_attempts():
    r = FakeRedis()
    queue = TaskQueue(r=r)
    await queue.push_dlq({**make_task("notify.order_paid", {"order_id": "ord-1"}, attempts=5),
                          "last_error": "boom", "failed_at": 1.0})
    await r.lpush(TASK_DLQ_KEY, "{broken")

    replayed = await queue.replay_dlq(limit=10)

    assert replayed == 1
    tasks = queued_tasks(r)
    assert len(tasks) == 1
    assert tasks[0]["attempts"] == 0
    assert "last_error" not in tasks[0]
    assert queued_tasks(r, TASK_DLQ_KEY) == []


@pytest.mark.asyncio
async def test_dlq_replay_keeps_task_when_requeue_fails():
    r = FakeRedis()
    queue = TaskQueue(r=r)
    task = make_task("notify.order_paid", {"order_id": "ord-1"}, attempts=5)
    await queue.push_dlq(task)
    r.failing_keys.add(TASK_QUEUE_KEY)

    with pytest.raises(redis.exceptions.ConnectionError):
        await queue.replay_dlq(limit=10)

    assert queued_tasks(r) == []
    dead = queued_tasks(r, TASK_DLQ_KEY)
    assert [t["task_id"] for t in dead] == [task["task_id"]]

    r.failing_keys.clear()
    assert await queue.replay_dlq(limit=10) == 1
    assert [t["task_id"] for t in queued_tasks(r)] == [task["task_id"]]
    assert queued_tasks(r, TASK_DLQ_KEY) == []


@pytest.mark.asyncio
async def test_dlq_replay_honours_limit():
    r = FakeRedis()
    queue = TaskQueue(r=r)
    for i in range(3):
        await queue.push_dlq(make_task("notify.order_paid", {"order_id": f"ord-{i}"}, attempts=5))

    assert await queue.replay_dlq(limit=2) == 2

    assert [t["payload"]["order_id"] for t in queued_tasks(r)] == ["ord-0", "ord-1"]
    assert [t["payload"]["order_id"] for t in queued_tasks(r, TASK_DLQ_KEY)] == ["ord-2"]


@pytest.mark.asyncio
async def test_enqueue_safely_reports_outage_instead_of_raising():
    r = FakeRedis()
    r.fail = True

    assert await TaskQueue(r=r).enqueue_safely("notify.order_paid", {"order_id": "ord-1"}) is False


def test_queue_needs_a_backend():
    with pytest.raises(ValueError):
        TaskQueue()
