import uuid

import orjson
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile

from ..container import Container
from ..models import DeadLetter, FileUrlResponse, TaskListResponse, TaskResponse
from ..services.tasks import TaskService
from ..storage.schema import Pagination, TaskFilter, TaskStatus

router = APIRouter(prefix="/api/v1")


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_service(container: Container = Depends(get_container)) -> TaskService:
    return container.task_service()


def _task_id(task_id: str) -> str:
    try:
        return str(uuid.UUID(task_id))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid task ID format")


def _parse_schema(raw: str) -> list[str]:
    try:
        schema = orjson.loads(raw)
    except orjson.JSONDecodeError:
        schema = None
    if not isinstance(schema, list) or not all(isinstance(f, str) for f in schema):
        raise HTTPException(status_code=400, detail="Schema must be a JSON array of strings")
    return schema


@router.post("/tasks", response_model=TaskResponse, status_code=201)
def create_task(
    file: UploadFile = File(...),
    schema: str = Form(...),
    service: TaskService = Depends(get_service),
    container: Container = Depends(get_container),
):
    fields = _parse_schema(schema)
    data = file.file.read(container.settings.max_upload_bytes + 1)
    if len(data) > container.settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail="File too large")
    task = service.create(file.filename or "", file.content_type, data, fields)
    return TaskResponse.from_record(task)


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    page: int = 1,
    page_size: int = 20,
    status: TaskStatus | None = None,
    service: TaskService = Depends(get_service),
):
    result = service.list(TaskFilter(status=status), Pagination.clamp(page, page_size))
    return TaskListResponse.from_page(result)


@router.get("/tasks/{task_id}", response_model=TaskResponse)
def get_task(task_id: str, service: TaskService = Depends(get_service)):
    return TaskResponse.from_record(service.get(_task_id(task_id)))


@router.get("/tasks/{task_id}/file", response_model=FileUrlResponse)
def get_task_file(task_id: str, service: TaskService = Depends(get_service)):
    return FileUrlResponse(url=service.file_url(_task_id(task_id)))


@router.post("/tasks/{task_id}/resubmit", response_model=TaskResponse, status_code=202)
def resubmit_task(task_id: str, service: TaskService = Depends(get_service)):
    return TaskResponse.from_record(service.resubmit(_task_id(task_id)))


@router.delete("/tasks/{task_id}", status_code=204)
def delete_task(task_id: str, service: TaskService = Depends(get_service)):
    service.delete(_task_id(task_id))
    return Response(status_code=204)


@router.get("/dead-letters", response_model=list[DeadLetter])
def list_dead_letters(limit: int = Query(50, ge=1, le=1000), container: Container = Depends(get_container)):
    return container.dead_letters.recent(limit)
