import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..errors import EmptyFileKeyError, EmptySchemaError, InvalidStateTransition

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskRecord(BaseModel):
    """One document-recognition work item.

    Status only moves forward: pending -> processing -> completed, or
    pending/processing -> failed. The ``mark_*`` methods enforce that and
    leave the record untouched when the guard does not hold. Identity and
    input fields are frozen once the record is built.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), frozen=True)
    status: TaskStatus = TaskStatus.PENDING
    file_key: str = Field(frozen=True)
    file_name: str = Field("", frozen=True)
    content_type: str = Field("", frozen=True)
    schema_fields: List[str] = Field(alias="schema", frozen=True)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _require_key_and_schema(self) -> "TaskRecord":
        if not self.file_key:
            raise EmptyFileKeyError()
        if not self.schema_fields:
            raise EmptySchemaError()
        return self

    @classmethod
    def new(cls, file_key: str, file_name: str, content_type: str, schema: List[str]) -> "TaskRecord":
        if not file_key:
            raise EmptyFileKeyError()
        if not schema:
            raise EmptySchemaError()
        now = utcnow()
        return cls(
            file_key=file_key,
            file_name=file_name,
            content_type=content_type,
            schema=list(schema),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _guard(self, target: TaskStatus, *allowed: TaskStatus) -> None:
        if self.status not in allowed:
            raise InvalidStateTransition(self.id, self.status.value, target.value)

    def mark_processing(self) -> None:
        self._guard(TaskStatus.PROCESSING, TaskStatus.PENDING)
        self.status = TaskStatus.PROCESSING
        self.updated_at = utcnow()

    def mark_requeued(self) -> None:
        """Record that a pending task was published again."""
        self._guard(TaskStatus.PENDING, TaskStatus.PENDING)
        self.updated_at = utcnow()

    def mark_completed(self, result: Dict[str, Any]) -> None:
        self._guard(TaskStatus.COMPLETED, TaskStatus.PROCESSING)
        now = utcnow()
        self.status = TaskStatus.COMPLETED
        self.result = dict(result)
        self.updated_at = now
        self.completed_at = now

    def mark_failed(self, message: str) -> None:
        self._guard(TaskStatus.FAILED, TaskStatus.PENDING, TaskStatus.PROCESSING)
        now = utcnow()
        self.status = TaskStatus.FAILED
        self.error = message or "unknown error"
        self.updated_at = now
        self.completed_at = now


class Pagination(BaseModel):
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @classmethod
    def clamp(cls, page: int | None, page_size: int | None) -> "Pagination":
        page = page if page and page > 0 else 1
        if not page_size or page_size < 1:
            page_size = DEFAULT_PAGE_SIZE
        return cls(page=page, page_size=min(page_size, MAX_PAGE_SIZE))

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size


class TaskFilter(BaseModel):
    status: Optional[TaskStatus] = None


class TaskPage(BaseModel):
    tasks: List[TaskRecord]
    total: int
    pagination: Pagination

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.pagination.page_size) if self.total else 0
