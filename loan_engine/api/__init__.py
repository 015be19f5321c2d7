"""
Loan Engine API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .loans import router as loans_router
from .installments import router as installments_router
from .. import __version__
from ..exceptions import (
    ConcurrencyConflictError, InvalidInputError, InvalidStateError,
    LoanEngineError, NotFoundError, StorageFailureError
)
from ..logging_config import get_logger


ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ConcurrencyConflictError, 409),
    (InvalidInputError, 422),
    (StorageFailureError, 503),
)

logger = get_logger("api")


def status_code_for(error: LoanEngineError) -> int:
    """HTTP status for an engine error"""
    for error_cls, code in ERROR_STATUS_CODES:
        if isinstance(error, error_cls):
            return code
    return 500


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Engine API",
        description="Loan amortization and event-adjustment engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LoanEngineError)
    async def handle_engine_error(request: Request, exc: LoanEngineError):
        code = status_code_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=code, content=exc.to_dict())

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(installments_router, prefix="/installments", tags=["Installments"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_engine_api",
            "version": __version__
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_engine.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


# Module-level app for uvicorn
app = create_app()
