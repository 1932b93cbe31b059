"""
workqueue - Operator API
========================
Small FastAPI app over the task queue service: enqueue, inspect, cancel,
retry, stale recovery and cleanup. Workers run separately
(``python -m workqueue.queue.run``).
"""

import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError

from workqueue.api.envelope import error_envelope
from workqueue.api.routes.tasks import router as tasks_router
from workqueue.core.config import get_settings
from workqueue.core.correlation import bind_request, get_request_id, new_request_id, reset_request
from workqueue.core.database import build_session_factory, get_engine, init_db
from workqueue.core.errors import (
    InvalidTaskTransition,
    TaskConflictError,
    TaskError,
    TaskNotFoundError,
    TaskPermissionError,
    TaskValidationError,
)
from workqueue.core.logging import get_logger, setup_logging
from workqueue.repositories.task_store import TaskStore
from workqueue.services.event_bus import EventBus
from workqueue.services.task_event_listeners import register_task_event_listeners
from workqueue.services.task_queue_service import TaskQueueService

settings = get_settings()
logger = get_logger("main")

ERROR_STATUS = (
    (TaskNotFoundError, 404),
    (TaskPermissionError, 403),
    (TaskValidationError, 422),
    (InvalidTaskTransition, 409),
    (TaskConflictError, 409),
)


def _build_default_service() -> TaskQueueService:
    store = TaskStore(build_session_factory(get_engine()))
    return TaskQueueService(store, register_task_event_listeners(EventBus()), settings=settings)


def create_app(service: TaskQueueService | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ── Startup ──
        setup_logging(debug=settings.app_debug)
        logger.info("app_starting", app=settings.app_name, env=settings.app_env)
        owns_service = service is None
        if owns_service:
            await init_db()
            app.state.task_service = _build_default_service()
        else:
            app.state.task_service = service

        yield

        # ── Shutdown ──
        bus = app.state.task_service.event_bus
        if bus is not None:
            await bus.drain()
        if owns_service:
            await get_engine().dispose()
        logger.info("app_shutdown")

    app = FastAPI(
        title="workqueue",
        description="Operator API for the database-backed background task queue.",
        version="1.0.0",
        lifespan=lifespan,
    )
    if service is not None:
        app.state.task_service = service

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests with timing."""
        request_id = request.headers.get("x-request-id") or new_request_id()
        scope = bind_request(request_id, request.headers.get("x-actor"))
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.time()
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            elapsed = round((time.time() - start) * 1000, 2)
            status_code = 500
            if response is not None:
                response.headers["x-request-id"] = request_id
                status_code = response.status_code
            if request.url.path not in ["/health", "/docs", "/redoc", "/openapi.json"]:
                logger.info(
                    "http_request",
                    method=request.method,
                    path=request.url.path,
                    status=status_code,
                    elapsed_ms=elapsed,
                    request_id=get_request_id(),
                )
            structlog.contextvars.clear_contextvars()
            reset_request(scope)

    @app.exception_handler(TaskError)
    async def task_error_handler(request: Request, exc: TaskError):
        status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
        logger.warning("task_error", path=request.url.path, code=exc.code, error=exc.message)
        return error_envelope(
            code=exc.code,
            message=exc.message,
            status_code=status_code,
            details=exc.details,
            meta={"path": request.url.path},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning("http_exception", path=request.url.path, status_code=exc.status_code, detail=str(exc.detail))
        return error_envelope(
            code="http_error",
            message="Request failed",
            status_code=exc.status_code,
            details=exc.detail,
            meta={"path": request.url.path},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("validation_error", path=request.url.path, errors=exc.errors())
        return error_envelope(
            code="validation_error",
            message="Validation failed",
            status_code=422,
            details=exc.errors(),
            meta={"path": request.url.path},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("unhandled_exception", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
        return error_envelope(
            code="internal_error",
            message="Internal server error",
            status_code=500,
            meta={"path": request.url.path},
        )

    app.include_router(tasks_router)

    @app.get("/health", tags=["System"])
    async def health_check():
        return {"status": "ok", "app": settings.app_name, "env": settings.app_env}

    return app


app = create_app()
