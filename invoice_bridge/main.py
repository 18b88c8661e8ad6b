from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from invoice_bridge.api import routes_invoices, routes_ledger
from invoice_bridge.core import logging as logging_utils
from invoice_bridge.core.config import Settings, get_settings
from invoice_bridge.db.session import create_schema, get_engine, is_sqlite_url

RequestHandler = Callable[[Request], Awaitable[Response]]

REQUEST_ID_HEADER = "X-Request-Id"


async def enforce_api_key(
    api_key_header: str | None = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    if api_key_header is None or api_key_header != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    logging_utils.configure_logging(settings.log_level)
    logger = logging.getLogger("invoice_bridge.lifespan")
    engine = get_engine()
    if is_sqlite_url(settings.database_url):
        # No migrations run against SQLite; build the tables in place.
        await create_schema(engine)
    logger.info("application_startup", extra={"environment": settings.environment})
    try:
        yield
    finally:
        await engine.dispose()
        logger.info("application_shutdown")


def error_response(
    request: Request,
    status_code: int,
    message: str,
    details: Optional[Any] = None,
) -> JSONResponse:
    """Every error leaves the service in the same envelope, tagged with the request id."""
    request_id = getattr(request.state, "request_id", None)
    response = JSONResponse(
        status_code=status_code,
        content={
            "code": status_code,
            "message": message,
            "details": details,
            "correlation_id": request_id,
        },
    )
    if request_id:
        response.headers[REQUEST_ID_HEADER] = request_id
    return response


def jsonable_errors(exc: RequestValidationError) -> list:
    # Validation contexts can carry exception instances that JSONResponse cannot encode.
    return jsonable_encoder(exc.errors(), custom_encoder={Exception: str})


async def bind_request_context(request: Request, call_next: RequestHandler) -> Response:
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    request.state.request_id = request_id
    request.state.response_status = None
    logging_utils.set_request_context(request_id=request_id)
    start = perf_counter()
    try:
        response = await call_next(request)
        request.state.response_status = response.status_code
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    except Exception:
        request.state.response_status = status.HTTP_500_INTERNAL_SERVER_ERROR
        raise
    finally:
        logging.getLogger("invoice_bridge.request").info(
            "request_completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": request.state.response_status,
                "duration_ms": round((perf_counter() - start) * 1000, 2),
            },
        )
        logging_utils.clear_request_context()


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, str):
            return error_response(request, exc.status_code, exc.detail)
        return error_response(request, exc.status_code, "Request failed", exc.detail)

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation error",
            jsonable_errors(exc),
        )

    @app.exception_handler(Exception)
    async def on_unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logging.getLogger("invoice_bridge.errors").exception(
            "unhandled_error",
            extra={"correlation_id": getattr(request.state, "request_id", None)},
        )
        return error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def create_app() -> FastAPI:
    settings = get_settings()
    docs_kwargs: dict[str, Any] = {}
    if not settings.allow_docs_without_auth:
        # The schema pages sit outside the API key check, so they are switched off instead.
        docs_kwargs = {"docs_url": None, "redoc_url": None, "openapi_url": None}
    app = FastAPI(
        title="Invoice Bridge",
        version=settings.app_version,
        lifespan=lifespan,
        **docs_kwargs,
    )
    app.middleware("http")(bind_request_context)
    install_error_handlers(app)

    protected = APIRouter(dependencies=[Depends(enforce_api_key)])
    protected.include_router(routes_invoices.router)
    protected.include_router(routes_ledger.router)
    app.include_router(protected)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.app_version}

    return app


app = create_app()


def run() -> None:
    uvicorn.run("invoice_bridge.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
