"""
Entitlement engine API entry point.

Serves entitlement decisions, commits, the credit view, admin tooling and
the billing webhook. Every route is scoped to the account forwarded by the
gateway (see api.dependencies.account_context).
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from entitlement_engine.api.routes import health
from entitlement_engine.api.routes import entitlements
from entitlement_engine.api.routes import credits
from entitlement_engine.api.routes import webhooks_billing
from entitlement_engine.entitlements.loader import get_entitlement_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting entitlement engine API")

    # Fail fast on a broken policy file rather than on the first request
    config = get_entitlement_config()
    app.state.policy_version = config.version
    logger.info("Entitlement policy loaded", extra={
        "policy_version": config.version,
        "features": len({p.feature for p in config.policies}),
    })

    missing = [
        var for var in ("DATABASE_URL", "BILLING_WEBHOOK_SECRET", "ENTITLEMENT_ADMIN_TOKEN")
        if not os.getenv(var)
    ]
    if missing:
        logger.warning(
            f"Entitlement engine partially configured (missing: {missing}). "
            "Affected endpoints will return 503."
        )

    yield

    logger.info("Shutting down entitlement engine API")


app = FastAPI(
    title="Entitlement Engine",
    description="Feature entitlements, usage caps and credit ledger",
    version="1.0.0",
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(entitlements.router)
app.include_router(credits.router)
app.include_router(webhooks_billing.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    context = getattr(request.state, "account_context", None)

    logger.error(
        "Unhandled exception",
        extra={
            "account_id": context.account_id if context else "unknown",
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "entitlement_engine.main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
