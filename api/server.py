"""FastAPI server for the integration engine.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import get_app_state
from api.routes import connectors, flows, health, webhooks
from core.errors import (
    FlowLimitExceededError,
    FlowNotFoundError,
    IntegrationError,
    InvalidFlowStateError,
    StepNotFoundError,
)
from core.observability import configure_logging, get_logger

logger = get_logger(__name__)

# Most specific first
ERROR_STATUS_CODES = [
    (FlowNotFoundError, 404),
    (InvalidFlowStateError, 409),
    (StepNotFoundError, 409),
    (FlowLimitExceededError, 429),
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    configure_logging()
    logger.info("Integration engine API starting up...")

    yield

    # Shutdown
    await get_app_state().executor.close()
    logger.info("Integration engine API shutting down...")


def status_code_for(error: Exception) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    if isinstance(error, ValueError):
        return 422
    return 500


async def handle_integration_error(request: Request, exc: IntegrationError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


async def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": type(exc).__name__, "detail": str(exc)})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Integration Engine API",
        description="Declarative REST connectors and Procure-to-Pay flow orchestration",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(IntegrationError, handle_integration_error)
    app.add_exception_handler(ValueError, handle_value_error)

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(flows.router, prefix="/flows", tags=["Flows"])
    app.include_router(connectors.router, prefix="/connectors", tags=["Connectors"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
