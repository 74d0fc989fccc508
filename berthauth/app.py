from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from berthauth.api.error_handling import error_response, register_exception_handlers
from berthauth.api.routes import client_id_from_request, router
from berthauth.api.schemas import Envelope, HealthResponse, KeyStatus
from berthauth.logging import get_logger, set_correlation_id
from berthauth.service.errors import ConfigurationError
from berthauth.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

# Probes and key discovery are not counted against the global limit
_GLOBAL_LIMIT_EXEMPT_PATHS = {"/healthz", "/.well-known/jwks.json"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load signing keys before serving; a bad key configuration aborts boot."""
    runtime = get_runtime()
    try:
        await runtime.start()
    except ConfigurationError as exc:
        logger.error("startup_failed", error=str(exc))
        raise

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="BerthAuth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def enforce_global_rate_limit(request: Request, call_next):
    if request.url.path in _GLOBAL_LIMIT_EXEMPT_PATHS:
        return await call_next(request)
    runtime = get_runtime()
    client_id = client_id_from_request(
        request, trust_forwarded_for=runtime.settings.trust_forwarded_for
    )
    decision = await runtime.rate_limiter.check(client_id, "global")
    if not decision.allowed:
        return error_response(
            429,
            "Too many requests, please try again later.",
            {"retry_after": decision.retry_after},
            code="rate_limited",
            headers=decision.headers(),
        )
    response = await call_next(request)
    for name, value in decision.headers().items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with X-Request-ID (client supplied or generated)."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/.well-known/jwks.json", tags=["keys"])
async def jwks() -> JSONResponse:
    runtime = get_runtime()
    if runtime.key_store is None:
        return error_response(503, "keys not loaded", code="service_unavailable")
    return JSONResponse(
        content=runtime.key_store.public_jwks(),
        headers={"Cache-Control": "public, max-age=300"},
    )


@app.get("/healthz", tags=["health"])
async def health() -> JSONResponse:
    """Report whether this replica can sign tokens."""
    runtime = get_runtime()
    cache_type = type(runtime.cache).__name__
    if runtime.key_store is None or runtime.issuer is None:
        body = HealthResponse(status="unhealthy", cache=cache_type, detail="keys not loaded")
        return JSONResponse(
            status_code=503, content=Envelope(status="ok", data=body).model_dump(mode="json")
        )
    await runtime.key_store.ensure_fresh()
    keys = KeyStatus(**runtime.key_store.describe())
    try:
        runtime.issuer.check_ready()
    except ConfigurationError as exc:
        logger.error("health_signing_key_unavailable", error=str(exc))
        body = HealthResponse(status="unhealthy", keys=keys, cache=cache_type, detail=str(exc))
        return JSONResponse(
            status_code=503, content=Envelope(status="ok", data=body).model_dump(mode="json")
        )
    body = HealthResponse(status="healthy", keys=keys, cache=cache_type)
    return JSONResponse(content=Envelope(status="ok", data=body).model_dump(mode="json"))


def create_app() -> FastAPI:
    return app
