from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gametrust import db
from gametrust.config import AppInfo, get_settings
from gametrust.core.logging import get_logger, setup_logging
from gametrust.core.runtime_state import set_scheduler_active
import gametrust.models  # registers the tables
from gametrust.routers import get_api_router
from gametrust.services import deadlines
from gametrust.services.cron import fire_due_timers_once, heartbeat_scheduler_lock, resume_settlements_once
from gametrust.services.notifications import build_notification_emitter, set_notification_emitter
from gametrust.services.payment_gateway import build_payment_gateway, set_payment_gateway
from gametrust.services.scheduler_lock import release_scheduler_lock, try_acquire_scheduler_lock
from gametrust.utils.errors import DomainError, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    """Configure middleware using a fresh snapshot of the settings."""

    runtime_settings = get_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-API-Key"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="gametrust")
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(
            dsn=runtime_settings.SENTRY_DSN,
            environment=runtime_settings.app_env,
            traces_sample_rate=0.2,
        )


def _start_scheduler(settings: Any) -> AsyncIOScheduler:
    """Start APScheduler, arm persisted timers and register the periodic jobs."""

    job_scheduler = AsyncIOScheduler(timezone="UTC")
    runner = deadlines.TimerRunner(job_scheduler, db.get_sessionmaker())
    deadlines.set_timer_runner(runner)
    job_scheduler.start()

    with db.session_scope() as session:
        deadlines.recover(session, runner)

    job_scheduler.add_job(
        fire_due_timers_once,
        "interval",
        seconds=settings.TIMER_SWEEP_SECONDS,
        id="timer-sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    job_scheduler.add_job(
        resume_settlements_once,
        "interval",
        minutes=settings.SETTLEMENT_RESUME_MINUTES,
        id="settlement-resume",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    job_scheduler.add_job(
        heartbeat_scheduler_lock,
        "interval",
        seconds=60,
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    return job_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Application startup", extra={"env": settings.app_env})

    db.init_engine()
    env_lower = settings.app_env.lower()
    if settings.ALLOW_DB_CREATE_ALL and env_lower in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    set_payment_gateway(build_payment_gateway(settings))
    set_notification_emitter(build_notification_emitter(settings))

    # Timers are only armed on the replica holding the scheduler lock; the
    # others still persist timers, which the lock holder's sweep picks up.
    global scheduler
    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock()
        if lock_acquired:
            scheduler = _start_scheduler(settings)
            set_scheduler_active(True)
        else:
            logger.warning(
                "Scheduler disabled because lock is already held by another instance.",
                extra={"env": settings.app_env},
            )
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        deadlines.set_timer_runner(None)
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Domain error", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        "VALIDATION_ERROR",
        "Request validation failed.",
        {"errors": jsonable_errors(exc)},
    )
    return JSONResponse(status_code=422, content=payload)


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


__all__ = ["app"]
