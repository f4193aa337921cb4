from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .acquirer import AcquirerService, PCCClient
from .config import Settings
from .database import create_engine, create_session_maker, create_tables
from .endpoints.bank_payment import router as bank_payment_router
from .endpoints.issuer import router as issuer_router
from .endpoints.pcc import router as pcc_router
from .endpoints.psp import router as psp_router
from .errors import InternalError, PaymentChainError
from .issuer import IssuerService
from .ledger import build_transaction_store
from .log import configure_logging
from .pcc import IssuerClient, PCCService
from .psp import PSPService, build_plugins
from .routing import BankRouter
from .schemas import APIError, HealthResponse

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application with every hop mounted.

    `transport` is handed to every outbound httpx client, which lets tests
    wire several applications together in-process.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)

    app = FastAPI(title="Paychain API", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    engine = create_engine(settings.database_url)
    session_maker = create_session_maker(engine)
    store = build_transaction_store(settings.ledger_backend, session_maker, settings.redis_url)

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_maker = session_maker
    app.state.pcc_service = PCCService(
        store=store,
        router=BankRouter(settings.bank_routes, settings.unknown_bin_policy),
        issuer_client=IssuerClient(timeout=settings.issuer_timeout_seconds, transport=transport),
        issuer_timeout=settings.issuer_timeout_seconds,
    )
    app.state.issuer_service = IssuerService(session_maker)
    app.state.acquirer_service = AcquirerService(
        session_maker,
        PCCClient(settings.pcc_url, timeout=settings.pcc_timeout_seconds, transport=transport),
        bank_frontend_url=settings.bank_frontend_url,
        psp_callback_url=settings.psp_callback_url,
        notify_timeout=settings.psp_timeout_seconds,
        transport=transport,
    )
    app.state.psp_service = PSPService(session_maker, build_plugins(settings, transport))

    app.include_router(pcc_router)
    app.include_router(issuer_router)
    app.include_router(bank_payment_router)
    app.include_router(psp_router)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ]
        logger.warning("Request validation failed", path=request.url.path, errors=len(errors))
        body = APIError(error="ValidationError", message="Invalid request", details={"errors": errors})
        return JSONResponse(status_code=400, content=body.model_dump())

    @app.exception_handler(PaymentChainError)
    async def payment_chain_exception_handler(request: Request, exc: PaymentChainError):
        logger.warning("Request failed", path=request.url.path, error=exc.error_code, message=exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error", path=request.url.path)
        return JSONResponse(status_code=500, content=InternalError().to_dict())

    @app.on_event("startup")
    async def startup_event():
        await create_tables(engine)
        logger.info(
            "Paychain started",
            ledger_backend=settings.ledger_backend,
            banks=len(settings.bank_routes),
            unknown_bin_policy=settings.unknown_bin_policy.value,
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        await store.close()
        await engine.dispose()

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(timestamp=datetime.now(timezone.utc), banks_count=len(settings.bank_routes))

    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn
    uvicorn.run(
        "paychain.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        log_level=app.state.settings.log_level.lower(),
    )
