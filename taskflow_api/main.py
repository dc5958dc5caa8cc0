import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskflow_api.config import Settings, load_settings
from taskflow_api.crud_task import TaskStore
from taskflow_api.database import (
    check_database,
    create_engine_from_settings,
    create_session_factory,
    init_models,
)
from taskflow_api.logging_setup import setup_logging
from taskflow_api.models import TaskStatus
from taskflow_api.queue_manager import JobQueue
from taskflow_api.redis_client import check_redis, create_redis
from taskflow_api.schemas import HealthRead, TaskCreate, TaskRead
from taskflow_api.task_service import TaskService, job_options_from_settings

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, service: Optional[TaskService] = None) -> FastAPI:
    """
    Build the HTTP app.

    Without an injected service the lifespan connects to the database and
    Redis and refuses to start when either is unreachable.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None:
            app.state.service = service
            yield
            return

        engine = create_engine_from_settings(settings)
        redis_client = create_redis(settings)
        try:
            await check_database(engine)
            await init_models(engine)
            await check_redis(redis_client)

            queue = JobQueue(
                redis_client,
                settings.queue_name,
                visibility_timeout=settings.visibility_timeout,
                block_ms=settings.block_ms,
            )
            await queue.initialize()
            app.state.service = TaskService(
                TaskStore(create_session_factory(engine)),
                queue,
                job_options_from_settings(settings),
            )
            logger.info("Task API ready, CORS enabled for %s", settings.cors_origin)
            yield
        finally:
            await engine.dispose()
            await redis_client.aclose()

    app = FastAPI(title="Async Task Manager", lifespan=lifespan)
    if service is not None:
        app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.cors_origin.split(",") if origin.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s - %s (%.0fms)", request.method, request.url.path, response.status_code, duration_ms
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Request validation failed",
                "status": 400,
                "details": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail, "status": exc.status_code})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "status": 500})

    def get_service(request: Request) -> TaskService:
        return request.app.state.service

    @app.get("/health", response_model=HealthRead)
    async def health():
        return HealthRead(status="healthy", timestamp=datetime.now(timezone.utc))

    @app.post("/tasks", response_model=TaskRead, status_code=201, response_model_exclude_none=True)
    async def create_task(task: TaskCreate, service: TaskService = Depends(get_service)):
        return await service.create_task(task.name, task.description)

    @app.get("/tasks", response_model=List[TaskRead], response_model_exclude_none=True)
    async def list_tasks(status: Optional[TaskStatus] = None, service: TaskService = Depends(get_service)):
        return await service.list_tasks(status=status)

    @app.get("/tasks/{task_id}", response_model=TaskRead, response_model_exclude_none=True)
    async def get_task(task_id: str, service: TaskService = Depends(get_service)):
        task = await service.get_task(task_id)
        if not task:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    return app


def run() -> None:
    """Entry point for `taskflow-api`."""
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_dir, "api.log")
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port, log_config=None)


if __name__ == "__main__":
    run()
