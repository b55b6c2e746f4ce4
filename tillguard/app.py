from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from tillguard.api.error_handling import register_exception_handlers, service_error_response
from tillguard.api.routes import router, set_csrf_cookie
from tillguard.config import Settings
from tillguard.logging import get_logger, set_correlation_id
from tillguard.service.audit import AuditStatus, SecurityEventType
from tillguard.service.bounded import run_bounded
from tillguard.service.csrf import CSRF_COOKIE_NAME, CSRF_FORM_FIELD, CSRF_HEADER_NAMES, SAFE_METHODS
from tillguard.service.errors import CsrfError, StoreUnavailableError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from tillguard.service.runtime import get_runtime

    runtime = get_runtime()
    runtime.start_background_tasks()
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Tillguard", version=__version__, lifespan=lifespan)

# Credential-establishing endpoints; they set the CSRF cookie rather than consume it
_CSRF_EXEMPT_PATHS = frozenset(
    {"/v1/auth/login", "/v1/auth/login/pin", "/v1/auth/refresh", "/v1/auth/logout"}
)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", *CSRF_HEADER_NAMES],
    expose_headers=["X-Request-ID", "X-CSRF-Token"],
    max_age=3600,
)


async def _submitted_csrf_token(request: Request) -> Optional[str]:
    for header in CSRF_HEADER_NAMES:
        value = request.headers.get(header)
        if value:
            return value
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = json.loads(await request.body() or b"{}")
        except ValueError:
            return None
        value = payload.get(CSRF_FORM_FIELD) if isinstance(payload, dict) else None
        return value if isinstance(value, str) else None
    if content_type.startswith("application/x-www-form-urlencoded"):
        values = parse_qs((await request.body()).decode("utf-8", "replace")).get(CSRF_FORM_FIELD)
        return values[0] if values else None
    return None


def _clears_csrf_cookie(response) -> bool:
    prefix = f'{CSRF_COOKIE_NAME}="";'
    return any(value.startswith(prefix) for value in response.headers.getlist("set-cookie"))


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    if (
        request.method.upper() in SAFE_METHODS
        or request.url.path in _CSRF_EXEMPT_PATHS
        or not request.url.path.startswith("/v1/")
    ):
        return await call_next(request)
    # A bearer header is never sent ambiently by the browser
    if request.headers.get("Authorization", "").lower().startswith("bearer "):
        return await call_next(request)

    from tillguard.service.runtime import get_runtime

    runtime = get_runtime()
    session_id = request.cookies.get("session_id")
    token = await _submitted_csrf_token(request)
    try:
        replacement = await asyncio.wait_for(
            runtime.csrf.validate(session_id, token), runtime.settings.store_timeout_seconds
        )
    except CsrfError as exc:
        await runtime.audit.log_security_event(
            SecurityEventType.CSRF_VIOLATION,
            AuditStatus.FAILURE,
            session_id=session_id,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            resource_type=request.url.path,
            action=request.method,
            details={"reason": exc.error_code},
        )
        return service_error_response(request, exc)
    except (asyncio.TimeoutError, RedisError, OSError) as exc:
        logger.error("csrf_store_unavailable", error=str(exc))
        return service_error_response(request, StoreUnavailableError())

    response = await call_next(request)
    if not _clears_csrf_cookie(response):
        set_csrf_cookie(response, runtime.settings, replacement)
        response.headers["X-CSRF-Token"] = replacement
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind ``X-Request-ID`` (or a fresh id) to the request's log context and echo it."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health():
    """Report credential store and Redis reachability.

    Each probe is bounded so a hung dependency reports unhealthy instead of
    hanging the check.
    """
    from tillguard.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        await run_bounded(
            runtime.store.ping, timeout=HEALTH_CHECK_TIMEOUT_SECONDS, operation="healthz"
        )
        checks["store"] = {"status": "healthy"}
    except StoreUnavailableError as exc:
        logger.error("health_check_store_failed", error=exc.message)
        checks["store"] = {"status": "unhealthy"}

    if runtime.cache is None:
        checks["redis"] = {"status": "disabled"}
    else:
        try:
            await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["redis"] = {"status": "healthy"}
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            checks["redis"] = {"status": "unhealthy"}

    healthy = all(c["status"] != "unhealthy" for c in checks.values())
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
