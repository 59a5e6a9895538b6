"""FastAPI application for the dashboard backend.

Every error is returned as `{"error": "<message>"}` with the status code the
error kind carries.
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..errors import OrchestratorError
from ..orchestrator import Orchestrator
from .routes import agents, events

API_VERSION = "0.1.0"


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        orchestrator: Orchestrator serving the requests; discovered from the
            current directory on first use when omitted

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="worktree-agents Dashboard API",
        description="Monitor and manage agents running in git worktrees",
        version=API_VERSION,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.orchestrator = orchestrator

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError):
        return JSONResponse(status_code=exc.http_status, content={"error": str(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()))
            messages.append(f"{location}: {error.get('msg')}")
        return JSONResponse(status_code=422, content={"error": "; ".join(messages) or "invalid request"})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        return JSONResponse(status_code=500, content={"error": str(exc) or type(exc).__name__})

    app.include_router(agents.router, prefix="/api", tags=["agents"])
    app.include_router(events.router, prefix="/api", tags=["events"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "worktree-agents Dashboard API",
            "version": API_VERSION,
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


def run_dashboard(
    orchestrator: Orchestrator,
    host: str = "127.0.0.1",
    port: int = 3847
) -> None:
    """Run the dashboard server.

    Args:
        orchestrator: Orchestrator for the repository being managed
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(orchestrator)
    uvicorn.run(app, host=host, port=port)
