from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from jobops.api.router import api_router
from jobops.core.config import get_settings
from jobops.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from jobops.services.app_settings import get_app_settings_service
from jobops.services.generation import get_run_controller
from jobops.services.store import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        # Live runs are stopped and persisted before the pool goes away.
        await get_run_controller().aclose()
        get_run_controller.cache_clear()
        get_app_settings_service.cache_clear()
        await get_repository().close()
        get_repository.cache_clear()


configure_logging(settings.log_level)
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings, app)


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


app.include_router(api_router)
