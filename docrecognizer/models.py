from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional

from .storage.schema import TaskPage, TaskRecord


class TaskResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: str  # pending | processing | completed | failed
    file_name: str
    content_type: str
    schema_fields: List[str] = Field(serialization_alias="schema")
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, rec: TaskRecord) -> "TaskResponse":
        return cls(
            id=rec.id,
            status=rec.status.value,
            file_name=rec.file_name,
            content_type=rec.content_type,
            schema_fields=rec.schema_fields,
            result=rec.result,
            error=rec.error,
            created_at=rec.created_at,
            updated_at=rec.updated_at,
            completed_at=rec.completed_at,
        )


class TaskListResponse(BaseModel):
    tasks: List[TaskResponse]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def from_page(cls, page: TaskPage) -> "TaskListResponse":
        return cls(
            tasks=[TaskResponse.from_record(t) for t in page.tasks],
            total=page.total,
            page=page.pagination.page,
            page_size=page.pagination.page_size,
            total_pages=page.total_pages,
        )


class FileUrlResponse(BaseModel):
    url: str


class DeadLetter(BaseModel):
    task_id: str
    error: str
    attempts: int
    failed_at: datetime


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None


class HealthResponse(BaseModel):
    ok: bool
    service: str
    version: str
    redis_ok: bool
