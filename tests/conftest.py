from pathlib import Path
import copy
import io
import sys
import uuid
from unittest.mock import MagicMock

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from docrecognizer.errors import TaskNotFound, TaskStatusConflict
from docrecognizer.storage.blobs import LocalBlobStore
from docrecognizer.storage.schema import TaskPage, TaskRecord, TaskStatus


class InMemoryTaskRepository:
    """Same contract as TaskRepository, kept in a dict."""

    def __init__(self):
        self.rows: dict[str, TaskRecord] = {}
        self.updates = 0
        self.fail_updates = False

    def create(self, rec):
        self.rows[rec.id] = copy.deepcopy(rec)

    def get_by_id(self, task_id):
        try:
            return copy.deepcopy(self.rows[task_id])
        except KeyError:
            raise TaskNotFound(task_id) from None

    def update(self, rec, expected_status=None):
        if self.fail_updates:
            raise ConnectionError("repository unavailable")
        stored = self.rows.get(rec.id)
        if stored is None:
            raise TaskNotFound(rec.id)
        if expected_status is not None and stored.status != expected_status:
            raise TaskStatusConflict(rec.id, TaskStatus(expected_status).value, stored.status.value)
        self.updates += 1
        self.rows[rec.id] = copy.deepcopy(rec)

    def delete(self, task_id):
        if self.rows.pop(task_id, None) is None:
            raise TaskNotFound(task_id)

    def list(self, flt, pagination):
        rows = sorted(self.rows.values(), key=lambda r: r.created_at, reverse=True)
        if flt.status:
            rows = [r for r in rows if r.status == flt.status]
        page = rows[pagination.offset:pagination.offset + pagination.limit]
        return TaskPage(tasks=page, total=len(rows), pagination=pagination)

    def list_stale(self, status, older_than):
        return [copy.deepcopy(r) for r in self.rows.values() if r.status == status and r.updated_at < older_than]


@pytest.fixture
def repo():
    return InMemoryTaskRepository()


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def producer():
    p = MagicMock()
    p.enqueue.side_effect = lambda task_id: f"msg-{task_id}"
    return p


@pytest.fixture
def make_task(repo, blobs):
    def _make(content=b"\x89PNG fake", content_type="image/png", schema=("invoice_number", "total_amount"),
              file_name="doc.png", status=TaskStatus.PENDING):
        key = blobs.upload(file_name, content_type, io.BytesIO(content))
        task = TaskRecord.new(key, file_name, content_type, list(schema))
        task.status = status
        repo.create(task)
        return task

    return _make


@pytest.fixture
def new_id():
    return lambda: str(uuid.uuid4())
