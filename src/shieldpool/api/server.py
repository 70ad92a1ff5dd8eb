import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shieldpool.api.routes import router
from shieldpool.config import EngineConfig
from shieldpool.engine.wallet import ShieldedWallet
from shieldpool.errors import (
    AllEndpointsFailed,
    ConcurrentSpendDetected,
    ConsolidationExhausted,
    ShieldPoolError,
    SpendInProgress,
)

logger = logging.getLogger("shieldpool.api")


def create_app(wallet: ShieldedWallet | None = None) -> FastAPI:
    """
    Build the API. Without a wallet, one is built from SHIELDPOOL_* env vars
    when the app starts and closed when it stops.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if wallet is not None:
            app.state.wallet = wallet
        else:
            config = EngineConfig.from_env()
            if not config.relayer_endpoints:
                logger.warning("SHIELDPOOL_RELAYER_ENDPOINTS not set. Spend endpoints are disabled.")
                app.state.wallet = None
            else:
                owned = ShieldedWallet.from_config(config)
                owned.relay.start()
                app.state.wallet = owned

        yield

        if owned is not None:
            owned.close()

    app = FastAPI(
        title="shieldpool",
        description="REST API for the shielded pool spend engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Allow CORS for easy frontend integration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ShieldPoolError)
    async def engine_error_handler(request: Request, exc: ShieldPoolError):
        if isinstance(exc, (SpendInProgress, ConcurrentSpendDetected)):
            status_code = 409
        elif isinstance(exc, ConsolidationExhausted):
            status_code = 422
        elif isinstance(exc, AllEndpointsFailed):
            status_code = 503
        else:
            status_code = 502
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    @app.get("/health")
    async def health_check():
        """Simple health check endpoint."""
        return {"status": "ok"}

    return app


app = create_app()
