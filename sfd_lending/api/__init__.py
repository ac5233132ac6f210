"""
SFD Lending API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .functions import router as functions_router
from .loans import router as loans_router
from .subsidies import router as subsidies_router
from .system import LendingSystem
from .. import __version__
from ..config import get_config
from ..exceptions import (
    GrantInactiveError, InsufficientFundsError, InvalidTransitionError, LendingError, NotFoundError,
    OverpaymentError, TransientError, ValidationError
)
from ..logging_config import configure_logging, get_logger


logger = get_logger("sfd_lending.api")

ERROR_STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    InsufficientFundsError: 409,
    InvalidTransitionError: 409,
    GrantInactiveError: 409,
    OverpaymentError: 409,
    TransientError: 503,
}


def status_code_for(error: LendingError) -> int:
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return 400


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="SFD Lending API",
        description="Loan schedules, repayments and subsidy tracking for SFD microfinance lending",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.lending_system = system or LendingSystem()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LendingError)
    async def handle_lending_error(request: Request, exc: LendingError):
        code = status_code_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
        return JSONResponse(status_code=code, content=exc.to_dict())

    app.include_router(functions_router, prefix="/functions", tags=["Functions"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(subsidies_router, prefix="/subsidies", tags=["Subsidies"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "sfd_lending_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "SFD Lending API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "functions": "/functions",
                "loans": "/loans",
                "subsidies": "/subsidies",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None):
    """Run the FastAPI server with settings from the environment"""
    config = get_config()
    configure_logging(config)
    uvicorn.run(
        create_app(LendingSystem(config)),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level=config.log_level.lower()
    )
