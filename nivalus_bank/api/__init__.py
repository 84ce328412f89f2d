"""
Nivalus Bank API Application Factory
"""

from contextlib import asynccontextmanager
import time
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .deps import BankingSystem
from .auth import router as auth_router
from .users import router as users_router
from .admin import router as admin_router
from .. import __version__
from ..errors import (
    AccountInactiveError, BusyError, ForbiddenError, InvalidCredentialsError,
    LedgerError, NotFoundError, UnauthenticatedError
)
from ..logging_config import get_logger, log_action, setup_logging
from ..storage import StorageBusyError


# Anything not listed is a client error (400)
ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (InvalidCredentialsError, 401),
    (UnauthenticatedError, 401),
    (AccountInactiveError, 403),
    (ForbiddenError, 403),
    (BusyError, 503),
)


def status_code_for(error: LedgerError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 400


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    if system is None:
        system = BankingSystem()
    settings = system.settings
    setup_logging(settings.log_level, log_format=settings.log_format)
    logger = get_logger("nivalus.api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        system.close()

    app = FastAPI(
        title="Nivalus Bank API",
        description="Account, transfer and transaction-history backend",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        if request.url.path.startswith("/api"):
            duration_ms = round((time.perf_counter() - start) * 1000, 1)
            log_action(
                logger, "info",
                f"{request.method} {request.url.path} {response.status_code} in {duration_ms}ms",
                action="http_request", resource=request.url.path,
                extra={
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                }
            )
        return response

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = status_code_for(exc)
        if status_code == 503:
            log_action(logger, "warning", exc.message, action="busy", resource=request.url.path)
        return JSONResponse(status_code=status_code, content={"message": exc.message})

    @app.exception_handler(StorageBusyError)
    async def storage_busy_handler(request: Request, exc: StorageBusyError):
        log_action(logger, "warning", str(exc), action="busy", resource=request.url.path)
        return JSONResponse(status_code=503, content={"message": BusyError.default_message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid request data", "errors": jsonable_encoder(exc.errors())}
        )

    # Include routers
    app.include_router(auth_router, prefix="/api", tags=["Auth"])
    app.include_router(users_router, prefix="/api", tags=["Users"])
    app.include_router(admin_router, prefix="/api/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "nivalus_bank_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Nivalus Bank API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "auth": ["/api/login", "/api/signup", "/api/logout"],
                "user": ["/api/user", "/api/transfer", "/api/history"],
                "admin": ["/api/admin/users", "/api/admin/transactions"],
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None,
               system: Optional[BankingSystem] = None) -> None:
    """Run the FastAPI server"""
    if system is None:
        system = BankingSystem()
    uvicorn.run(
        create_app(system),
        host=host or system.settings.api_host,
        port=port or system.settings.api_port,
        log_level=system.settings.log_level.lower()
    )
