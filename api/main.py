"""Admin and status service for the VPN key bot."""
from __future__ import annotations

from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api.utils.logging import configure_logging, get_logger
from api.config import RENEWAL_LOOKAHEAD_HOURS, RENEWAL_NOTIFICATION_HOUR

# === Initialization ===
configure_logging()
logger = get_logger("api")

app = FastAPI(title="VPN Key Bot Service", version="1.0.0")

# === Routers ===
from api.endpoints import payments, renewals, status  # noqa: E402
from api.utils import db  # noqa: E402
from api.utils.notifications import RenewalScheduler  # noqa: E402


renewal_scheduler = RenewalScheduler(
    hour=RENEWAL_NOTIFICATION_HOUR,
    lookahead=timedelta(hours=RENEWAL_LOOKAHEAD_HOURS),
)
app.state.renewal_scheduler = renewal_scheduler


class RootResponse(BaseModel):
    """Schema describing the payload returned by the API root endpoint."""

    ok: bool = Field(..., description="Indicates whether the service is operating normally.")
    message: str = Field(..., description="Short description of the service state.")
    docs_url: str = Field(..., description="Relative URL of the interactive API documentation.")


class HealthResponse(BaseModel):
    """Schema describing the payload returned by the health-check endpoint."""

    ok: bool = Field(..., description="Indicates whether the service is operating normally.")


@app.on_event("startup")
def ensure_database() -> None:
    """Initialise the SQLite database schema and start the reminder scheduler."""
    logger.info("Initialising database schema if required")
    db.init_db()
    renewal_scheduler.start()


# === Router registration ===
app.include_router(status.router)
app.include_router(renewals.router)
app.include_router(payments.router)


@app.get("/", response_model=RootResponse, include_in_schema=False)
def root() -> RootResponse:
    """Provide a friendly message at the API root."""

    return RootResponse(ok=True, message="VPN key bot service is running.", docs_url="/docs")


@app.on_event("shutdown")
def stop_background_tasks() -> None:
    """Ensure background schedulers are stopped when the application shuts down."""

    logger.info("Stopping renewal reminder scheduler")
    renewal_scheduler.stop()


# === Health check ===
@app.get("/healthz", response_model=HealthResponse)
def healthz() -> HealthResponse:
    """Simple health-check endpoint used for monitoring."""
    logger.debug("Health check endpoint called")
    return HealthResponse(ok=True)


# === Global error handler ===
@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    """Return a uniform JSON error response for any unhandled exception."""
    _ = request  # FastAPI requires this argument
    logger.exception("Unhandled exception during request processing: %s", exc)
    return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})


__all__ = ["app"]
