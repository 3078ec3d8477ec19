"""
Gold Lending API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .. import __version__
from ..errors import NotFoundError, InvalidStateError, ValidationError, ReconciliationDriftError
from ..system import LendingSystem
from .loans import router as loans_router
from .payments import router as payments_router
from .gold_items import router as gold_items_router
from .overdue import router as overdue_router
from .reports import router as reports_router


logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "detail": message})


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(InvalidStateError)
    async def invalid_state_handler(request: Request, exc: InvalidStateError):
        return _error(status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(ReconciliationDriftError)
    async def drift_handler(request: Request, exc: ReconciliationDriftError):
        return _error(status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        system: LendingSystem = request.app.state.lending_system
        message = str(exc) if system.config.environment == "development" else "Internal server error"
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, message)


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    lending_system = system or LendingSystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the overdue scheduler with the app and stop it on shutdown"""
        lending_system.start()
        try:
            yield
        finally:
            lending_system.scheduler.stop()

    app = FastAPI(
        title="Gold Lending API",
        description="Gold-backed lending with payment ledger and overdue tracking",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.lending_system = lending_system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(gold_items_router, prefix="/gold-items", tags=["Gold Items"])
    app.include_router(overdue_router, prefix="/overdue", tags=["Overdue"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "gold_lending_api",
            "version": __version__,
            "overdue_scheduler_running": lending_system.scheduler.is_running()
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Gold Lending API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "payments": "/payments",
                "gold-items": "/gold-items",
                "overdue": "/overdue",
                "reports": "/reports",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    system = LendingSystem()
    uvicorn.run(
        create_app(system),
        host=host or system.config.api_host,
        port=port or system.config.api_port,
        log_level="debug" if debug else "info"
    )
