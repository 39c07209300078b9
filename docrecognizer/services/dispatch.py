"""Dispatch queue contract between task submission and recognition workers.

Producer side: ``TaskProducer.enqueue`` publishes a task id on the
high-priority recognition lane. Consumer side: ``TaskConsumer.handle`` runs
the pipeline for one delivery and says whether the queue should consider it
done, deliver it again, or give up on it. The Celery glue lives in
``worker/celery_app.py``; nothing here depends on a running broker.

Delivery is at-least-once. A retryable failure is redelivered until
``max_retries`` redeliveries have been made, then dead-lettered.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List

import orjson
import redis
from kombu.exceptions import OperationalError

from ..errors import EnqueueError
from .recognition import RecognitionPipeline

PROCESS_TASK_NAME = "recognition.process_task"
RECONCILE_TASK_NAME = "maintenance.reconcile_stale_tasks"


class TaskProducer:
    def __init__(self, celery_app, queue: str = "recognition", logger: logging.Logger | None = None):
        self.celery = celery_app
        self.queue = queue
        self.log = logger or logging.getLogger(__name__)

    def enqueue(self, task_id: str) -> str:
        """Publish ``task_id``; returns the broker message id."""
        try:
            result = self.celery.send_task(PROCESS_TASK_NAME, args=[task_id], queue=self.queue)
        except (OperationalError, redis.RedisError, OSError) as exc:
            raise EnqueueError(f"failed to enqueue task {task_id}: {exc}") from exc
        self.log.debug("Enqueued task %s on %s as %s", task_id, self.queue, result.id)
        return result.id


class DeliveryOutcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    DROP = "drop"


class DeadLetterQueue:
    """Deliveries the queue gave up on, newest first, capped at ``max_items``."""

    def __init__(self, client: redis.Redis, key: str = "recognition:dead", max_items: int = 1000):
        self.r = client
        self.key = key
        self.max_items = max_items

    def push(self, task_id: str, error: str, attempts: int) -> None:
        entry = {
            "task_id": task_id,
            "error": error,
            "attempts": attempts,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }
        with self.r.pipeline() as pipe:
            pipe.lpush(self.key, orjson.dumps(entry))
            pipe.ltrim(self.key, 0, self.max_items - 1)
            pipe.execute()

    def recent(self, limit: int = 50) -> List[dict]:
        return [orjson.loads(raw) for raw in self.r.lrange(self.key, 0, max(limit, 1) - 1)]


class TaskConsumer:
    def __init__(
        self,
        pipeline: RecognitionPipeline,
        max_retries: int = 3,
        dead_letters: DeadLetterQueue | None = None,
        logger: logging.Logger | None = None,
    ):
        self.pipeline = pipeline
        self.max_retries = max(max_retries, 0)
        self.dead_letters = dead_letters
        self.log = logger or logging.getLogger(__name__)

    def handle(self, task_id: str, attempt: int = 0) -> DeliveryOutcome:
        """Process one delivery.

        Args:
            task_id: Task id carried by the message.
            attempt: Redeliveries already made for this message (0 on first delivery).
        """
        try:
            uuid.UUID(str(task_id))
        except ValueError:
            self.log.error("Dropping delivery with malformed task id %r", task_id)
            self._dead_letter(str(task_id), "invalid task id", attempt)
            return DeliveryOutcome.DROP

        self.log.info("Processing recognition task %s (attempt %d)", task_id, attempt + 1)
        try:
            self.pipeline.process_task(task_id)
        except Exception as exc:
            retryable = getattr(exc, "retryable", True)
            if retryable and attempt < self.max_retries:
                self.log.warning("Task %s failed, will retry (%d/%d): %s", task_id, attempt + 1, self.max_retries, exc)
                return DeliveryOutcome.RETRY
            self.log.error("Task %s dropped after %d attempt(s): %s", task_id, attempt + 1, exc, exc_info=True)
            self._dead_letter(task_id, str(exc), attempt + 1)
            return DeliveryOutcome.DROP
        return DeliveryOutcome.SUCCESS

    def _dead_letter(self, task_id: str, error: str, attempts: int) -> None:
        if self.dead_letters is None:
            return
        try:
            self.dead_letters.push(task_id, error, attempts)
        except redis.RedisError:
            self.log.exception("Could not dead-letter task %s", task_id)
