"""
Loan Engine API Application Factory
"""

from fastapi import Depends, FastAPI
import uvicorn

from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging
from .dependencies import LoanSystem, get_loan_system
from .facilities import router as facilities_router
from .loans import router as loans_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    
    app = FastAPI(
        title="Loan Ledger Engine API",
        description="Loan ledger and interest-accrual engine for bank credit facilities",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    
    # Include routers
    app.include_router(facilities_router, prefix="/facilities", tags=["Facilities"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    
    # Health check endpoint
    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_engine_api",
            "version": __version__
        }
    
    @app.get("/audit/verify")
    def verify_audit(system: LoanSystem = Depends(get_loan_system)):
        """Verify the audit hash chain"""
        return system.engine.verify_audit_integrity()
    
    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8091, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_engine.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
