from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from paxadmin.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from paxadmin.apps.api.response import API_VERSION, is_versioned_request
from paxadmin.apps.api.routes.health import router as health_router
from paxadmin.apps.api.routes.migrations import router as migrations_router
from paxadmin.apps.api.routes.modules import router as modules_router
from paxadmin.apps.api.routes.provisioning import router as provisioning_router
from paxadmin.apps.api.routes.tenants import router as tenants_router
from paxadmin.core.config import get_settings
from paxadmin.core.errors import PaxAdminError
from paxadmin.core.logging import configure_logging


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    f"/{API_VERSION}/openapi.json",
    f"/{API_VERSION}/docs",
)
_ROUTERS = (
    health_router,
    provisioning_router,
    migrations_router,
    tenants_router,
    modules_router,
)


def _wrap_in_envelope(payload: object, request_id: str) -> dict:
    return {"data": payload, "meta": {"request_id": request_id, "api_version": API_VERSION}}


def _is_enveloped(payload: object) -> bool:
    return (
        isinstance(payload, dict)
        and "data" in payload
        and isinstance(payload.get("meta"), dict)
        and payload["meta"].get("api_version") == API_VERSION
    )


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Pax Admin API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        # Versioned JSON successes always leave inside the envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                if payload is not None and not _is_enveloped(payload):
                    wrapped = JSONResponse(content=_wrap_in_envelope(payload, request_id), status_code=response.status_code)
                    for key, value in response.headers.items():
                        if key.lower() not in {"content-length", "content-type"}:
                            wrapped.headers[key] = value
                    response = wrapped
        response.headers.setdefault("X-Request-Id", request_id)
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        return response

    @app.exception_handler(PaxAdminError)
    async def _domain_exception_handler(request: Request, exc: PaxAdminError):
        return await domain_exception_handler(request, exc)

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

    # Internal clients call the unversioned paths; /v1 adds the response envelope.
    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    for router in _ROUTERS:
        app.include_router(router, include_in_schema=False)

    @app.get(f"/{API_VERSION}/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    def custom_openapi() -> dict:
        # Document the service-key header on every route except liveness.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Pax Admin API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["ServiceKey"] = {
            "type": "apiKey",
            "in": "header",
            "name": "X-Service-Key",
        }
        if settings.service_auth_enabled:
            for path, operations in schema.get("paths", {}).items():
                if path == f"/{API_VERSION}/health":
                    continue
                for operation in operations.values():
                    operation.setdefault("security", [{"ServiceKey": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
