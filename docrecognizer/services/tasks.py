import io
import logging
from typing import BinaryIO, List

from ..errors import (
    BlobNotFound,
    EmptySchemaError,
    EnqueueError,
    StorageError,
    TaskStatusConflict,
)
from ..storage.blobs import BlobStore
from ..storage.repo import TaskRepository
from ..storage.schema import Pagination, TaskFilter, TaskPage, TaskRecord, TaskStatus
from ..utils import content_types
from .dispatch import TaskProducer


def clean_schema(schema: List[str]) -> List[str]:
    """Strip names, drop blanks and duplicates, keep the caller's order."""
    seen = set()
    fields = []
    for name in schema or []:
        name = str(name).strip()
        if name and name not in seen:
            seen.add(name)
            fields.append(name)
    if not fields:
        raise EmptySchemaError()
    return fields


class TaskService:
    """Submission and read side of the task lifecycle."""

    def __init__(self, repo: TaskRepository, blobs: BlobStore, producer: TaskProducer,
                 logger: logging.Logger | None = None):
        self.repo = repo
        self.blobs = blobs
        self.producer = producer
        self.log = logger or logging.getLogger(__name__)

    def create(self, file_name: str, content_type: str | None, data: bytes | BinaryIO,
               schema: List[str], size: int | None = None) -> TaskRecord:
        # validation happens before anything is stored or enqueued
        ct = content_types.resolve(content_type, file_name)
        fields = clean_schema(schema)

        if isinstance(data, (bytes, bytearray)):
            size = len(data)
            data = io.BytesIO(data)

        file_key = self.blobs.upload(file_name, ct, data, size)
        task = TaskRecord.new(file_key, file_name, ct, fields)
        try:
            self.repo.create(task)
        except Exception:
            self.log.error("Failed to save task for %s, removing uploaded file", file_key)
            self._delete_blob(file_key)
            raise

        # the record stays pending if this fails; the sweep re-enqueues it
        try:
            self.producer.enqueue(task.id)
        except EnqueueError as exc:
            self.log.error("Failed to enqueue task %s: %s", task.id, exc)

        self.log.info("Task %s created for %s, fields=%s", task.id, file_name, fields)
        return task

    def get(self, task_id: str) -> TaskRecord:
        return self.repo.get_by_id(task_id)

    def list(self, flt: TaskFilter, pagination: Pagination) -> TaskPage:
        return self.repo.list(flt, pagination)

    def delete(self, task_id: str) -> None:
        task = self.repo.get_by_id(task_id)
        self._delete_blob(task.file_key)
        self.repo.delete(task_id)
        self.log.info("Task %s deleted", task_id)

    def file_url(self, task_id: str) -> str:
        task = self.repo.get_by_id(task_id)
        return self.blobs.get_url(task.file_key)

    def resubmit(self, task_id: str) -> TaskRecord:
        """Publish a pending task again, e.g. after a lost enqueue."""
        task = self.repo.get_by_id(task_id)
        if task.status != TaskStatus.PENDING:
            raise TaskStatusConflict(task_id, TaskStatus.PENDING.value, task.status.value)
        self.producer.enqueue(task.id)
        return task

    def _delete_blob(self, key: str) -> None:
        try:
            self.blobs.delete(key)
        except BlobNotFound:
            self.log.warning("File %s already gone", key)
        except StorageError as exc:
            self.log.warning("Failed to delete file %s: %s", key, exc)
