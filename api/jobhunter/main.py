from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from jobhunter.api.router import api_router
from jobhunter.core.config import get_settings
from jobhunter.core.errors import JobHunterError
from jobhunter.core.telemetry import (
    TelemetryRuntime,
    configure_api_logging,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from jobhunter.services.pipeline import get_pipeline_runner
from jobhunter.services.repository import get_repository

configure_api_logging()
settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        # In-flight pipeline tasks belong to this event loop.
        await get_pipeline_runner().shutdown()
        get_pipeline_runner.cache_clear()
        await get_repository().close()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


@app.exception_handler(JobHunterError)
async def jobhunter_error_handler(_: Request, exc: JobHunterError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request failed status=%s error=%s", exc.status_code, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "invalid request", "details": details})


app.include_router(api_router)
