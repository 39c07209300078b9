import logging
from datetime import datetime
from typing import List

import orjson
import redis

from ..errors import TaskNotFound, TaskStatusConflict
from .schema import Pagination, TaskFilter, TaskPage, TaskRecord, TaskStatus

ALL_INDEX = "tasks:created"


class TaskRepository:
    """Task records stored as Redis hashes.

    ``task:<id>`` holds the record. Sorted sets scored by creation time index
    every task (``tasks:created``) and the tasks of each status
    (``tasks:status:<status>``) so listing is newest first with offset paging.
    Status changes go through WATCH/MULTI so each one is a single atomic
    write of one record.
    """

    def __init__(self, client: redis.Redis, logger: logging.Logger | None = None):
        self.r = client
        self.log = logger or logging.getLogger(__name__)

    @classmethod
    def from_url(cls, url: str, logger: logging.Logger | None = None) -> "TaskRepository":
        return cls(redis.from_url(url, decode_responses=True), logger)

    def _key(self, task_id: str) -> str:
        return f"task:{task_id}"

    def _status_index(self, status: TaskStatus | str) -> str:
        return f"tasks:status:{TaskStatus(status).value}"

    def create(self, rec: TaskRecord) -> None:
        score = rec.created_at.timestamp()
        with self.r.pipeline() as pipe:
            pipe.hset(self._key(rec.id), mapping=_to_mapping(rec))
            pipe.zadd(ALL_INDEX, {rec.id: score})
            pipe.zadd(self._status_index(rec.status), {rec.id: score})
            pipe.execute()
        self.log.debug("Task %s created", rec.id)

    def get_by_id(self, task_id: str) -> TaskRecord:
        data = self.r.hgetall(self._key(task_id))
        if not data:
            raise TaskNotFound(task_id)
        return _from_mapping(task_id, data)

    def update(self, rec: TaskRecord, expected_status: TaskStatus | None = None) -> None:
        """Persist the mutable fields of ``rec``.

        Raises TaskNotFound when the record is gone and TaskStatusConflict when
        ``expected_status`` is given and the stored status differs from it.
        """
        key = self._key(rec.id)
        with self.r.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    current = pipe.hget(key, "status")
                    if current is None:
                        raise TaskNotFound(rec.id)
                    if expected_status is not None and current != TaskStatus(expected_status).value:
                        raise TaskStatusConflict(rec.id, TaskStatus(expected_status).value, current)

                    pipe.multi()
                    pipe.hset(key, mapping={
                        "status": rec.status.value,
                        "result": _dump(rec.result),
                        "error": rec.error or "",
                        "updated_at": rec.updated_at.isoformat(),
                        "completed_at": rec.completed_at.isoformat() if rec.completed_at else "",
                    })
                    if current != rec.status.value:
                        score = rec.created_at.timestamp()
                        pipe.zrem(self._status_index(current), rec.id)
                        pipe.zadd(self._status_index(rec.status), {rec.id: score})
                    pipe.execute()
                    return
                except redis.WatchError:
                    # someone else wrote the record between WATCH and EXEC; re-read
                    continue
                finally:
                    pipe.reset()

    def delete(self, task_id: str) -> None:
        status = self.r.hget(self._key(task_id), "status")
        if status is None:
            raise TaskNotFound(task_id)
        with self.r.pipeline() as pipe:
            pipe.delete(self._key(task_id))
            pipe.zrem(ALL_INDEX, task_id)
            for s in TaskStatus:
                pipe.zrem(self._status_index(s), task_id)
            deleted = pipe.execute()[0]
        if not deleted:
            raise TaskNotFound(task_id)

    def list(self, flt: TaskFilter, pagination: Pagination) -> TaskPage:
        index = self._status_index(flt.status) if flt.status else ALL_INDEX
        total = self.r.zcard(index)
        ids = self.r.zrevrange(index, pagination.offset, pagination.offset + pagination.limit - 1)
        return TaskPage(tasks=self._load_many(ids), total=total, pagination=pagination)

    def list_stale(self, status: TaskStatus, older_than: datetime) -> List[TaskRecord]:
        """Records in ``status`` whose last update is before ``older_than``."""
        ids = self.r.zrange(self._status_index(status), 0, -1)
        return [
            rec for rec in self._load_many(ids)
            if rec.status == status and rec.updated_at < older_than
        ]

    def _load_many(self, ids: List[str]) -> List[TaskRecord]:
        if not ids:
            return []
        with self.r.pipeline(transaction=False) as pipe:
            for task_id in ids:
                pipe.hgetall(self._key(task_id))
            rows = pipe.execute()
        # a record deleted between the index read and the hash read is skipped
        return [_from_mapping(task_id, data) for task_id, data in zip(ids, rows) if data]


def _dump(value) -> str:
    return orjson.dumps(value).decode() if value is not None else ""


def _to_mapping(rec: TaskRecord) -> dict:
    return {
        "status": rec.status.value,
        "file_key": rec.file_key,
        "file_name": rec.file_name,
        "content_type": rec.content_type,
        "schema": _dump(rec.schema_fields),
        "result": _dump(rec.result),
        "error": rec.error or "",
        "created_at": rec.created_at.isoformat(),
        "updated_at": rec.updated_at.isoformat(),
        "completed_at": rec.completed_at.isoformat() if rec.completed_at else "",
    }


def _from_mapping(task_id: str, data: dict) -> TaskRecord:
    return TaskRecord(
        id=task_id,
        status=data["status"],
        file_key=data["file_key"],
        file_name=data.get("file_name", ""),
        content_type=data.get("content_type", ""),
        schema=orjson.loads(data["schema"]),
        result=orjson.loads(data["result"]) if data.get("result") else None,
        error=data.get("error") or None,
        created_at=data["created_at"],
        updated_at=data["updated_at"],
        completed_at=data.get("completed_at") or None,
    )
