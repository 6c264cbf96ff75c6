# main.py
import logging
from contextlib import asynccontextmanager

import psycopg2
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.escrow.errors import EscrowError
from db import close_pool
from middleware import PlatformGuardMiddleware, RequestContextMiddleware
from routes.admin_platform_settings import router as admin_platform_settings_router
from routes.admin_settlements import router as admin_settlements_router
from routes.disputes import router as disputes_router
from routes.health import router as health_router
from routes.invoices import router as invoices_router
from routes.payments import router as payments_router
from routes.payouts import router as payouts_router
from routes.referral import router as referral_router
from routes.webhooks import router as webhooks_router
from services.db_errors import http_error_for_db_error

logger = logging.getLogger("escrow.http")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    close_pool()


def create_app() -> FastAPI:
    app = FastAPI(title="Escrow API", version="1.0.0", lifespan=lifespan)

    # -----------------------------
    # MIDDLEWARE (last added runs first)
    # -----------------------------
    app.add_middleware(PlatformGuardMiddleware)
    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(payments_router)
    app.include_router(payouts_router)
    app.include_router(invoices_router)
    app.include_router(disputes_router)
    app.include_router(referral_router)
    app.include_router(admin_settlements_router)
    app.include_router(admin_platform_settings_router)

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(psycopg2.Error)
    async def db_error_handler(request: Request, exc: psycopg2.Error):
        err = http_error_for_db_error(exc)
        if err.status_code >= 500:
            logger.exception("database error path=%s", request.url.path)
        return JSONResponse(status_code=err.status_code, content={"detail": err.detail})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


app = create_app()
