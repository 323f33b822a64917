"""
Projection engine web API.

Serves state estimation, projections, profile metadata and sensitivity
analysis over the same engine the CLI drives. Engine errors that escape a
route are mapped to the status their type implies.
"""

from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from projection_engine.api.routes import profiles, projections, sensitivity
from projection_engine.api.routes.projections import engine_http_error
from projection_engine.calibration import DEFAULT_CALIBRATION
from projection_engine.errors import ProjectionEngineError
from projection_engine.logger import setup_logger
from projection_engine.safety import ABSOLUTE_RAILS

API_VERSION = "1.0.0"

setup_logger(level="INFO")
log = logger.bind(component="api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info(
        f"Projection engine API {API_VERSION} up, calibration {DEFAULT_CALIBRATION.version}, "
        f"plan rail {ABSOLUTE_RAILS.max_plan_weeks} weeks"
    )
    yield
    log.info("Projection engine API shutting down")


app = FastAPI(
    title="Training Load Projection Engine API",
    description="Deterministic, cap-aware training load projection and planning",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # React dev server
        "http://localhost:5173",  # Vite dev server
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(projections.router, prefix="/api", tags=["Projections"])
app.include_router(profiles.router, prefix="/api", tags=["Profiles"])
app.include_router(sensitivity.router, prefix="/api", tags=["Sensitivity"])


@app.get("/")
async def root() -> Dict[str, str]:
    """API information and the default calibration in force."""
    return {
        "name": "Training Load Projection Engine API",
        "version": API_VERSION,
        "calibration_version": DEFAULT_CALIBRATION.version,
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health_check() -> Dict[str, str]:
    return {
        "status": "healthy",
        "service": "projection-engine-api",
        "calibration_version": DEFAULT_CALIBRATION.version,
    }


@app.exception_handler(ProjectionEngineError)
async def engine_error_handler(request: Request, exc: ProjectionEngineError):
    """Engine errors raised outside a route's own handling keep their typed status."""
    log.warning(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    http_error = engine_http_error(exc)
    return JSONResponse(status_code=http_error.status_code, content=http_error.detail)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent error format."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "message": str(exc.detail)},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": str(exc),
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "projection_engine.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
