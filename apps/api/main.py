"""
Tech Pack Studio - FastAPI Backend
Main application entry point with health check and API routing.
"""

import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager

from config import is_development, settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    billing,
    tech_pack,
)
from services.analysis_queue import recover_stalled_background_tasks
from services.background import wait_for_background_tasks
from services.credits import reconcile_failed_refunds
from services.generation import GenerationError


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Tech Pack Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        async with async_session_maker() as db:
            settled = await reconcile_failed_refunds(db)
        if settled:
            print(f"💳 Settled {settled} pending credit refunds after startup.")
    except Exception as exc:
        print(f"⚠️ Refund reconciliation skipped: {exc}")
    try:
        recovered = await recover_stalled_background_tasks()
        if recovered:
            print(f"♻️ Marked {recovered} interrupted background analyses as failed.")
    except Exception as exc:
        print(f"⚠️ Stalled analysis recovery skipped: {exc}")
    yield
    # Shutdown
    await wait_for_background_tasks(timeout=10)
    print("👋 Shutting down API...")


app = FastAPI(
    title="Tech Pack Studio API",
    description="Generate manufacturing tech packs from product images, billed in credits",
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


def _error_body(error, **extra) -> dict:
    return {"success": False, "error": error, **extra}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(status_code=400, content=_error_body("; ".join(messages) or "Invalid request"))


@app.exception_handler(GenerationError)
async def generation_exception_handler(request: Request, exc: GenerationError):
    extra = {"step": exc.step, "refunded": exc.refunded}
    if is_development():
        extra["traceback"] = "".join(traceback.format_exception(exc))
    return JSONResponse(status_code=500, content=_error_body(str(exc) or "Generation failed", **extra))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    extra = {"traceback": "".join(traceback.format_exception(exc))} if is_development() else {}
    return JSONResponse(status_code=500, content=_error_body(str(exc) or "Internal server error", **extra))


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(tech_pack.router, prefix="/api/tech-pack-v2", tags=["Tech Pack"])
app.include_router(billing.router, prefix="/api/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Tech Pack Studio API",
        "version": "0.1.0",
        "status": "running"
    }
