import logging
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import load_settings
from .container import Container, build_container
from .errors import DocRecognizerError, TaskNotFound, TaskStatusConflict, TaskValidationError
from .logging_setup import setup_logging
from .models import ErrorResponse, HealthResponse
from .routers import tasks

log = logging.getLogger("docrecognizer.api")

_ERROR_CODES = {
    400: "invalid_request",
    404: "not_found",
    409: "conflict",
    413: "file_too_large",
}


def _error(status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content=ErrorResponse(error=code, message=message).model_dump())


def create_app(container: Container | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "container", None) is None:
            settings = load_settings()
            setup_logging(settings.log_level, settings.log_format)
            from worker.celery_app import celery_app

            app.state.container = build_container(settings, celery_app)
        yield

    app = FastAPI(title="Document Recognizer API", version="1.0.0", lifespan=lifespan)
    app.state.container = container
    app.include_router(tasks.router)

    @app.exception_handler(DocRecognizerError)
    async def _domain_error(request: Request, exc: DocRecognizerError):
        if isinstance(exc, TaskValidationError):
            return _error(400, "invalid_request", str(exc))
        if isinstance(exc, TaskNotFound):
            return _error(404, "not_found", "Task not found")
        if isinstance(exc, TaskStatusConflict):
            return _error(409, "conflict", str(exc))
        log.error("Request %s %s failed: %s", request.method, request.url.path, exc)
        return _error(500, "internal_error", "Internal error")

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError):
        problems = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
        return _error(400, "invalid_request", problems)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, _ERROR_CODES.get(exc.status_code, "error"), str(exc.detail))

    @app.get("/health", response_model=HealthResponse)
    def health(request: Request) -> HealthResponse:
        redis_ok = False
        try:
            redis_ok = bool(request.app.state.container.redis.ping())
        except redis.RedisError:
            redis_ok = False
        return HealthResponse(ok=True, service="api", version=app.version, redis_ok=redis_ok)

    return app


app = create_app()
