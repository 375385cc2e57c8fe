"""
Revive - outbound messaging compliance and scheduling engine.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from revive.config import get_settings
from revive.api.router import api_router
from revive.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("revive")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Revive starting up (env=%s)", settings.app_env)

    if not settings.cron_secret:
        logger.warning("CRON_SECRET not set - internal trigger endpoints will reject every call")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []

    # Periodic triggers normally come from cron; run them in-process when asked
    if settings.run_workers_in_process:
        from revive.workers.send_worker import run_send_worker
        from revive.workers.autopilot import run_autopilot_worker
        from revive.workers.followup_scheduler import run_followup_scheduler

        worker_tasks.append(asyncio.create_task(run_send_worker()))
        worker_tasks.append(asyncio.create_task(run_autopilot_worker()))
        worker_tasks.append(asyncio.create_task(run_followup_scheduler()))
        logger.info("In-process workers started (send_worker, autopilot, followup_scheduler)")

    yield

    logger.info("Revive shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    logger.info("Revive shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Revive",
        description="Outbound messaging compliance and scheduling engine",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
