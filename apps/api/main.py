"""
Blind Canvas - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, session, placements, billing
from services.color_pool import ColorPoolExhaustedError, InvalidColorError
from services.credits import InvalidGrantError
from services.ledger import (
    LedgerUnavailableError,
    ParticipantNotFoundError,
    PlacementValidationError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Blind Canvas API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Blind Canvas API",
    description="Place a quota of blind marks on a shared canvas, then reveal it",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, code: str, message: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": {"error": code, "message": message}},
        headers=headers,
    )


@app.exception_handler(ParticipantNotFoundError)
async def participant_not_found_handler(request: Request, exc: ParticipantNotFoundError):
    return _error(404, "NOT_FOUND", "Participant not found. Start a new session.")


@app.exception_handler(PlacementValidationError)
async def placement_validation_handler(request: Request, exc: PlacementValidationError):
    return _error(422, "VALIDATION", str(exc))


@app.exception_handler(InvalidColorError)
async def invalid_color_handler(request: Request, exc: InvalidColorError):
    return _error(422, "INVALID_COLOR", str(exc))


@app.exception_handler(ColorPoolExhaustedError)
async def color_pool_exhausted_handler(request: Request, exc: ColorPoolExhaustedError):
    return _error(409, "COLOR_POOL_EXHAUSTED", str(exc))


@app.exception_handler(InvalidGrantError)
async def invalid_grant_handler(request: Request, exc: InvalidGrantError):
    return _error(422, "INVALID_GRANT", str(exc))


@app.exception_handler(LedgerUnavailableError)
async def ledger_unavailable_handler(request: Request, exc: LedgerUnavailableError):
    logger.warning("Ledger unavailable for %s %s: %s", request.method, request.url.path, exc)
    return _error(503, "LEDGER_UNAVAILABLE", str(exc), headers={"Retry-After": "1"})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(session.router, prefix="/session", tags=["Session"])
app.include_router(placements.router, prefix="/placements", tags=["Placements"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Blind Canvas API",
        "version": "0.1.0",
        "status": "running"
    }
