import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from sqlalchemy import text

from adintel.config import settings
from adintel.db.base import engine
from adintel.routers import billing_webhooks, jobs, quota
from adintel.services.job_state_machine import InvalidJobRequest, JobAlreadyExists
from adintel.services.quota_ledger import InvalidOrganization, QuotaExceeded

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="adintel API",
        default_response_class=ORJSONResponse,
    )

    allow_origins = sorted(set(settings.BACKEND_CORS_ORIGINS))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QuotaExceeded)
    async def quota_exceeded_handler(_request: Request, exc: QuotaExceeded) -> ORJSONResponse:
        return ORJSONResponse(
            status_code=402,
            content={
                "detail": str(exc),
                "used": exc.used,
                "limit": exc.limit,
                "requested": exc.requested,
                "remaining": max(0, exc.limit - exc.used),
            },
        )

    @app.exception_handler(InvalidOrganization)
    async def invalid_organization_handler(_request: Request, exc: InvalidOrganization) -> ORJSONResponse:
        status_code = 404 if exc.reason == "not_found" else 400
        return ORJSONResponse(status_code=status_code, content={"detail": str(exc), "reason": exc.reason})

    @app.exception_handler(InvalidJobRequest)
    async def invalid_job_request_handler(_request: Request, exc: InvalidJobRequest) -> ORJSONResponse:
        return ORJSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(JobAlreadyExists)
    async def job_exists_handler(_request: Request, exc: JobAlreadyExists) -> ORJSONResponse:
        return ORJSONResponse(status_code=409, content={"detail": str(exc), "job_id": exc.job_id})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return ORJSONResponse(status_code=500, content={"detail": "Internal server error."})

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/health/db")
    def health_db() -> dict[str, str]:
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return {"db": "ok"}
        except Exception as exc:  # pragma: no cover - simple runtime check
            return {"db": f"error: {exc}"}

    app.include_router(jobs.router)
    app.include_router(quota.router)
    app.include_router(billing_webhooks.router)
    return app


app = create_app()
