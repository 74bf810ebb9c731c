"""FastAPI application factory for ReviewLoom.

Creates and configures the FastAPI app with CORS, the ReviewLoom error
handler and all route modules registered.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..core.exceptions import ReviewLoomError

logger = logging.getLogger(__name__)


def create_app(db_manager, orchestrator, settings) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_manager: DatabaseManager instance
        orchestrator: AnalysisOrchestrator instance
        settings: Settings instance

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Cancel in-flight analyses before the engine goes away
        await orchestrator.shutdown()
        db_manager.dispose()

    app = FastAPI(
        title="ReviewLoom API",
        description="Multi-level AI review analysis with live progress",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS for the review UI dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ReviewLoomError)
    async def reviewloom_error_handler(request: Request, exc: ReviewLoomError):
        if exc.status_code >= 500:
            logger.error(f"Error handling {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    # Store shared dependencies on app state
    app.state.db_manager = db_manager
    app.state.orchestrator = orchestrator
    app.state.settings = settings

    # Register routers
    from .routes.analysis import router as analysis_router
    from .routes.runs import router as runs_router

    app.include_router(analysis_router, prefix="/api")
    app.include_router(runs_router, prefix="/api")

    @app.get("/api/health")
    async def health_check():
        return {"status": "ok", "service": "reviewloom"}

    logger.info("FastAPI app created with all routes registered")
    return app
