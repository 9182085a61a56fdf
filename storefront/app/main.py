from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from storefront.app.api.v1.router import router as v1_router
from storefront.app.api.deps import get_client_ip
from storefront.app.core.logging import bind_request_context, clear_request_context, configure_logging
from storefront.services.errors import (
    IdempotencyConflictError,
    NotFoundError,
    OrderAccessError,
    OrderStateError,
    OutOfStockError,
    StorageFaultError,
)
from storefront.services.security import SecurityEventLog

logger = structlog.get_logger(__name__)


async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def out_of_stock_handler(request: Request, exc: OutOfStockError):
    return JSONResponse(
        status_code=422,
        content={"detail": "Insufficient inventory", "insufficient_items": exc.items},
    )


async def order_state_handler(request: Request, exc: OrderStateError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


async def order_access_handler(request: Request, exc: OrderAccessError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


async def idempotency_conflict_handler(request: Request, exc: IdempotencyConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


async def storage_fault_handler(request: Request, exc: StorageFaultError):
    logger.error("storage_fault", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Internal storage error"})


async def request_context_middleware(request: Request, call_next):
    """Chaque ligne de log de la requête porte request_id, user_id et ip."""
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    clear_request_context()
    bind_request_context(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        user_id=(request.headers.get("x-user-id") or "").strip() or None,
        ip=get_client_ip(request),
    )
    try:
        response = await call_next(request)
    finally:
        clear_request_context()
    response.headers["X-Request-ID"] = request_id
    return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("storefront_started")
    yield


def create_app(security_log: SecurityEventLog | None = None) -> FastAPI:
    app = FastAPI(title="Storefront", version="0.1.0", lifespan=lifespan)
    app.state.security_log = security_log if security_log is not None else SecurityEventLog()

    app.middleware("http")(request_context_middleware)

    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(OutOfStockError, out_of_stock_handler)
    app.add_exception_handler(OrderStateError, order_state_handler)
    app.add_exception_handler(OrderAccessError, order_access_handler)
    app.add_exception_handler(IdempotencyConflictError, idempotency_conflict_handler)
    app.add_exception_handler(StorageFaultError, storage_fault_handler)

    app.include_router(v1_router, prefix="/v1")
    return app


app = create_app()
