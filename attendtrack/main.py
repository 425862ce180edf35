import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from attendtrack.db import engine
from attendtrack.errors import install_exception_handlers
from attendtrack.logging_utils import setup_json_logging
from attendtrack.routers import admin, attendance, auth, leave
from attendtrack.security import ensure_session_secret_configured
from attendtrack.services.mailer import SmtpChannel
from attendtrack.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from attendtrack.settings import get_cors_origins, get_settings

setup_json_logging()
logger = logging.getLogger("attendtrack.request")
startup_logger = logging.getLogger("attendtrack.startup")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_exception_handlers(app)

for module in (auth, attendance, leave, admin):
    app.include_router(module.router)


def _request_log_fields(request: Request, *, status_code: int, started: float) -> dict[str, Any]:
    state = request.state
    return {
        "request_id": state.request_id,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "actor": getattr(state, "actor", "system"),
        "actor_id": getattr(state, "actor_id", "system"),
        "account_id": getattr(state, "account_id", None),
    }


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-Id") or str(uuid4())
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request.state.request_id
        return response
    finally:
        logger.info("request_complete", extra=_request_log_fields(request, status_code=status_code, started=started))


async def _guard_schema() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        startup_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    startup_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        raise RuntimeError(f"Runtime schema guard failed: {'; '.join(result.issues)}")


@app.on_event("startup")
async def on_startup() -> None:
    ensure_session_secret_configured()
    await _guard_schema()
    missing_fields = SmtpChannel().config_status()["missing_fields"]
    if missing_fields:
        startup_logger.warning("email_channel_not_configured", extra={"missing_fields": missing_fields})


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult | None = getattr(app.state, "schema_guard_result", None)
    if schema_guard_result is None:
        schema_guard_result = SchemaGuardResult(
            ok=False,
            checked_at_utc=datetime.now(timezone.utc),
            issues=["SCHEMA_GUARD_NOT_RUN"],
        )
    return {
        "status": "ok",
        "environment": settings.environment,
        "schema_guard": schema_guard_result.to_dict(),
        "email_channel": SmtpChannel().config_status(),
    }
