from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
import json
import logging
import time

from fastapi import FastAPI, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.responses import StreamingResponse

from agriqcert.apps.api.errors import register_exception_handlers
from agriqcert.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id, is_versioned_request
from agriqcert.apps.api.routes.audit import router as audit_router
from agriqcert.apps.api.routes.credentials import router as credentials_router
from agriqcert.apps.api.routes.health import router as health_router
from agriqcert.core.logging import configure_logging
from agriqcert.services.container import ServiceContainer, build_container
from agriqcert.services.telemetry import record_request


logger = logging.getLogger(__name__)

TITLE = "AgriQCert API"
LEGACY_SUNSET = timedelta(days=90)
_DOC_PATHS = ("/docs", "/redoc", "/openapi.json")
# Anonymous endpoints: verifiers, scanners and the provider callback.
PUBLIC_PATHS = frozenset(
    {
        "/v1/health",
        "/v1/credentials/verify",
        "/v1/credentials/webhook",
        "/v1/credentials/certificates/{certificate_id}/status",
        "/v1/credentials/certificates/{certificate_id}/qr.svg",
    }
)


def _is_enveloped(payload: object) -> bool:
    return (
        isinstance(payload, dict)
        and set(payload) >= {"data", "meta"}
        and isinstance(payload["meta"], dict)
        and payload["meta"].get("api_version") == API_VERSION
    )


def _ensure_envelope(request: Request, response: Response) -> Response:
    """Wrap bare JSON bodies from /v1 routes in the success envelope."""
    if (
        response.status_code >= 400
        or response.media_type != "application/json"
        or isinstance(response, StreamingResponse)
        or request.url.path.startswith(tuple(f"/{API_VERSION}{path}" for path in _DOC_PATHS))
    ):
        return response
    body = getattr(response, "body", b"")
    if not body:
        return response
    try:
        payload = json.loads(body)
    except ValueError:
        return response
    if _is_enveloped(payload):
        return response
    wrapped = JSONResponse(
        content={"data": payload, "meta": {"request_id": get_request_id(request), "api_version": API_VERSION}},
        status_code=response.status_code,
    )
    for key, value in response.headers.items():
        if key.lower() not in ("content-length", "content-type"):
            wrapped.headers[key] = value
    return wrapped


def _mark_deprecated(response: Response) -> None:
    response.headers["Deprecation"] = "true"
    response.headers["Sunset"] = format_datetime(datetime.now(timezone.utc) + LEGACY_SUNSET)
    response.headers["Link"] = f'</{API_VERSION}/docs>; rel="successor-version"'


def _build_openapi(app: FastAPI) -> dict:
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(title=TITLE, version=API_VERSION, routes=app.routes)
    schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
    schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
    for path, operations in schema.get("paths", {}).items():
        if path in PUBLIC_PATHS:
            continue
        for operation in operations.values():
            operation.setdefault("security", [{"BearerAuth": []}])
    app.openapi_schema = schema
    return schema


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        aclose = getattr(app.state.container.provider, "aclose", None)
        if aclose is not None:
            await aclose()

    app = FastAPI(title=TITLE, lifespan=lifespan)
    app.state.container = container or build_container()
    register_exception_handlers(app)

    @app.middleware("http")
    async def request_context(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        started = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - started) * 1000.0,
        )
        if is_versioned_request(request):
            response = _ensure_envelope(request, response)
        elif not request.url.path.startswith(_DOC_PATHS):
            _mark_deprecated(response)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    for router in (credentials_router, health_router, audit_router):
        app.include_router(router, prefix=f"/{API_VERSION}")
        # Unversioned aliases stay reachable but are hidden and marked deprecated.
        app.include_router(router, include_in_schema=False)

    @app.get(f"/{API_VERSION}/openapi.json", include_in_schema=False)
    async def versioned_openapi() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get(f"/{API_VERSION}/docs", include_in_schema=False)
    async def versioned_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=f"/{API_VERSION}/openapi.json", title=f"{TITLE} {API_VERSION}")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"/{API_VERSION}/docs")

    app.openapi = lambda: _build_openapi(app)  # type: ignore[method-assign]
    logger.info("api_created provider_mode=%s", app.state.container.provider.mode)
    return app


app = create_app()
