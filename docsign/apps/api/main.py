from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from docsign.apps.api.errors import (
    docsign_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from docsign.apps.api.response import API_VERSION
from docsign.apps.api.routes.documents import router as documents_router
from docsign.apps.api.routes.health import router as health_router
from docsign.apps.api.routes.objects import router as objects_router
from docsign.apps.api.routes.ops import router as ops_router
from docsign.apps.api.routes.signing import router as signing_router
from docsign.core.config import get_settings
from docsign.core.errors import DocsignError
from docsign.core.logging import configure_logging
from docsign.services.telemetry import record_request


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Docsign API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(DocsignError)
    async def _docsign_exception_handler(request: Request, exc: DocsignError):
        return await docsign_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    app.include_router(documents_router, prefix=f"/{API_VERSION}")
    app.include_router(signing_router, prefix=f"/{API_VERSION}")
    app.include_router(objects_router, prefix=f"/{API_VERSION}")

    logger.info("api_started app=%s", get_settings().app_name)
    return app


app = create_app()
