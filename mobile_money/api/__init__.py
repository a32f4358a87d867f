"""
Mobile Money API Application Factory
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .system import WalletSystem, get_wallet_system
from .accounts import router as accounts_router
from .admin import router as admin_router
from .transfers import router as transfers_router
from .cash_requests import router as cash_requests_router
from ..config import MobileMoneyConfig, get_config
from ..errors import (
    AuthenticationError, AuthorizationError, BusinessRuleError, ConflictError,
    InfrastructureError, MobileMoneyError, NotFoundError, ValidationError,
)
from ..logging_config import get_logger, log_action, setup_logging
from .. import __version__


logger = get_logger("mobile_money.api")

# Most specific first; PartialFailure and unknown errors fall through to 500
STATUS_CODES = (
    (ValidationError, 400),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (BusinessRuleError, 422),
    (InfrastructureError, 503),
)


def status_code_for(error: MobileMoneyError) -> int:
    for error_class, code in STATUS_CODES:
        if isinstance(error, error_class):
            return code
    return 500


def create_app(system: Optional[WalletSystem] = None,
               config: Optional[MobileMoneyConfig] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    A ``system`` passed in is used as-is and left open for its owner;
    otherwise one is built from configuration at startup and closed on
    shutdown.
    """
    config = config or (system.config if system else get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "system", None) is None
        if owned:
            app.state.system = WalletSystem(config)
        app.state.system.bootstrap_admin()
        try:
            yield
        finally:
            if owned:
                app.state.system.close()
                app.state.system = None

    app = FastAPI(
        title="Mobile Money API",
        description="Customer and agent wallets with agent-mediated cash operations",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MobileMoneyError)
    async def handle_ledger_error(request: Request, exc: MobileMoneyError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            log_action(
                logger, "error", f"Request failed: {exc.message}",
                action="api_error", resource=request.url.path,
                extra={"code": exc.code, "details": exc.details}
            )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(accounts_router, tags=["Accounts"])
    app.include_router(transfers_router, tags=["Transfers"])
    app.include_router(cash_requests_router, tags=["Cash Requests"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "mobile_money_api",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server with uvicorn"""
    config = get_config()
    setup_logging(config.log_level, log_file=config.log_file)
    uvicorn.run(
        "mobile_money.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )


__all__ = ["create_app", "run_server", "WalletSystem", "get_wallet_system"]
