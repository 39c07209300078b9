import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

import redis

from ..errors import DocRecognizerError, TaskStatusConflict
from ..storage.repo import TaskRepository
from ..storage.schema import TaskStatus, utcnow
from .dispatch import TaskProducer

STALE_PROCESSING_MESSAGE = "processing timed out"


@dataclass
class SweepReport:
    requeued: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class StaleTaskSweeper:
    """Recovers tasks the pipeline could not bring to a terminal status.

    * pending longer than ``pending_after``: the enqueue after creation was
      lost, publish the id again.
    * processing longer than ``processing_after``: the worker died or could
      not persist its failure, mark the task failed.
    """

    def __init__(
        self,
        repo: TaskRepository,
        producer: TaskProducer,
        pending_after: timedelta,
        processing_after: timedelta,
        logger: logging.Logger | None = None,
    ):
        self.repo = repo
        self.producer = producer
        self.pending_after = pending_after
        self.processing_after = processing_after
        self.log = logger or logging.getLogger(__name__)

    def sweep(self) -> SweepReport:
        report = SweepReport()
        now = utcnow()

        for task in self.repo.list_stale(TaskStatus.PENDING, now - self.pending_after):
            try:
                self.producer.enqueue(task.id)
            except (DocRecognizerError, redis.RedisError) as exc:
                self.log.error("Could not re-enqueue stale task %s: %s", task.id, exc)
                continue
            report.requeued.append(task.id)

            # stale again only after another pending_after
            task.mark_requeued()
            try:
                self.repo.update(task, expected_status=TaskStatus.PENDING)
            except TaskStatusConflict:
                continue
            except (DocRecognizerError, redis.RedisError) as exc:
                self.log.warning("Could not mark stale task %s as requeued: %s", task.id, exc)

        for task in self.repo.list_stale(TaskStatus.PROCESSING, now - self.processing_after):
            task.mark_failed(STALE_PROCESSING_MESSAGE)
            try:
                self.repo.update(task, expected_status=TaskStatus.PROCESSING)
            except TaskStatusConflict:
                # finished while we were looking at it
                continue
            except (DocRecognizerError, redis.RedisError) as exc:
                self.log.error("Could not fail stale task %s: %s", task.id, exc)
                continue
            report.failed.append(task.id)

        if report.requeued or report.failed:
            self.log.info("Sweep requeued %d and failed %d stale task(s)", len(report.requeued), len(report.failed))
        return report
