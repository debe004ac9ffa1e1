"""
AWS SQS helpers for the side-effect task queue. Used when SQS_QUEUE_URL is set.
boto3 is synchronous: async callers go through asyncio.to_thread.
"""
import asyncio
import json

import boto3


class SqsClient:
    def __init__(self, region: str, queue_url: str, dlq_url: str | None = None):
        self.queue_url = queue_url
        self.dlq_url = dlq_url
        self._client = boto3.client("sqs", region_name=region)

    async def send_message(self, body: dict) -> None:
        """Send message to main queue (run boto3 in thread to not block)."""
        await asyncio.to_thread(
            self._client.send_message,
            QueueUrl=self.queue_url,
            MessageBody=json.dumps(body),
        )

    def receive_messages(self, max_number: int = 10, wait_seconds: int = 5) -> list[dict]:
        """Sync receive (used by worker in thread). Returns list of {ReceiptHandle, Body, Attributes}."""
        resp = self._client.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=max_number,
            WaitTimeSeconds=wait_seconds,
            MessageAttributeNames=["All"],
            AttributeNames=["ApproximateReceiveCount"],
        )
        return resp.get("Messages") or []

    def delete_message(self, receipt_handle: str) -> None:
        """Sync delete after successful process."""
        self._client.delete_message(
            QueueUrl=self.queue_url,
            ReceiptHandle=receipt_handle,
        )

    def change_message_visibility(self, receipt_handle: str, visibility_timeout: int) -> None:
        """Delay next visibility for backoff."""
        self._client.change_message_visibility(
            QueueUrl=self.queue_url,
            ReceiptHandle=receipt_handle,
            VisibilityTimeout=visibility_timeout,
        )

    async def get_queue_depth(self) -> tuple[int, int]:
        """Return (ApproximateNumberOfMessages, ApproximateNumberOfMessagesNotVisible) for metrics."""
        def _get():
            r = self._client.get_queue_attributes(
                QueueUrl=self.queue_url,
                AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
            )
            attrs = r.get("Attributes") or {}
            return (
                int(attrs.get("ApproximateNumberOfMessages", 0)),
                int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
            )

        return await asyncio.to_thread(_get)

    def _receive_from_dlq(self, max_number: int = 10) -> list[dict]:
        resp = self._client.receive_message(
            QueueUrl=self.dlq_url,
            MaxNumberOfMessages=max_number,
            WaitTimeSeconds=0,
        )
        return resp.get("Messages") or []

    def _delete_from_dlq(self, receipt_handle: str) -> None:
        self._client.delete_message(
            QueueUrl=self.dlq_url,
            ReceiptHandle=receipt_handle,
        )

    async def replay_dlq(self, limit: int = 100) -> int:
        """
        Read tasks from the DLQ, re-send them to the main queue with attempts reset, delete from DLQ.
        Unparseable DLQ messages are dropped. Returns number of messages re-sent.
        """
        if not self.dlq_url:
            return 0
        replayed = 0
        while replayed < limit:
            messages = await asyncio.to_thread(self._receive_from_dlq, 10)
            if not messages:
                break
            for msg in messages:
                if replayed >= limit:
                    break
                receipt = msg.get("ReceiptHandle") or ""
                try:
                    data = json.loads(msg.get("Body") or "{}")
                except json.JSONDecodeError:
                    data = {}
                if data.get("task_id") and data.get("kind"):
                    await self.send_message({**data, "attempts": 0})
                    replayed += 1
                await asyncio.to_thread(self._delete_from_dlq, receipt)
        return replayed
