"""
Yield Ledger API Application Factory
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .accounts import router as accounts_router
from .deposits import router as deposits_router
from .withdrawals import router as withdrawals_router
from .. import __version__


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Yield Ledger API",
        description="Loan ledger with yield deposits, anniversary payouts and LIFO withdrawals",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(deposits_router, prefix="/yield-deposits", tags=["Yield Deposits"])
    app.include_router(withdrawals_router, prefix="/withdrawal-requests", tags=["Withdrawals"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "yield_ledger_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Yield Ledger API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "accounts": "/accounts",
                "yield-deposits": "/yield-deposits",
                "withdrawal-requests": "/withdrawal-requests",
            }
        }

    return app
