"""
Voucher Ledger API Application Factory
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .accounts import router as accounts_router
from .payments import router as payments_router
from .finalizations import router as finalizations_router
from .undo import router as undo_router
from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Voucher Ledger API",
        description="Payment finalization and budget balance ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(finalizations_router, prefix="/finalizations", tags=["Finalizations"])
    app.include_router(undo_router, prefix="/undo", tags=["Undo"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "voucher_ledger_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Voucher Ledger API",
            "version": __version__,
            "description": "Payment finalization and budget balance ledger",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "accounts": "/accounts",
                "payments": "/payments",
                "finalizations": "/finalizations",
                "undo": "/undo",
            }
        }

    return app


# Create the app instance for uvicorn
app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server with configured logging"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "voucher_ledger.api_modular:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
