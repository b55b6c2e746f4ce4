from __future__ import annotations

import secrets
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Request, Response
from fastapi.responses import JSONResponse

from tillguard.api.error_handling import error_response, service_error_response
from tillguard.api.schemas import (
    AuditEventInfo,
    AuditQueryResponse,
    CsrfTokenResponse,
    Envelope,
    LoginRequest,
    PinLoginRequest,
    PinStrengthResponse,
    RefreshRequest,
    SessionActivityInfo,
    SessionInfo,
    SetPinRequest,
    TerminateOthersResponse,
    TokenResponse,
    VerifyResponse,
)
from tillguard.config import Settings
from tillguard.logging import get_logger, sanitize_error_message
from tillguard.service.auth import AuthContext, LoginResult
from tillguard.service.csrf import CSRF_COOKIE_NAME
from tillguard.service.errors import ServiceError
from tillguard.service.runtime import get_runtime
from tillguard.storage.models import AuditQuery

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE_NAME = "access_token"
REFRESH_COOKIE_NAME = "refresh_token"
SESSION_COOKIE_NAME = "session_id"
AUTH_COOKIE_NAMES = (ACCESS_COOKIE_NAME, REFRESH_COOKIE_NAME, SESSION_COOKIE_NAME, CSRF_COOKIE_NAME)


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _set_cookie(
    response: Response, settings: Settings, name: str, value: str, max_age: int, *, httponly: bool = True
) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        httponly=httponly,
        secure=settings.is_production,
        samesite=settings.cookie_samesite,
        path="/",
    )


def set_csrf_cookie(response: Response, settings: Settings, token: str) -> None:
    """The CSRF cookie stays readable by scripts so it can be echoed in a header."""
    _set_cookie(
        response, settings, CSRF_COOKIE_NAME, token, settings.csrf_token_ttl_minutes * 60, httponly=False
    )


def apply_auth_cookies(response: Response, settings: Settings, result: LoginResult) -> None:
    _set_cookie(response, settings, ACCESS_COOKIE_NAME, result.access_token, result.expires_in_seconds)
    _set_cookie(
        response,
        settings,
        REFRESH_COOKIE_NAME,
        result.refresh_token,
        settings.refresh_token_ttl_days * 24 * 60 * 60,
    )
    _set_cookie(
        response,
        settings,
        SESSION_COOKIE_NAME,
        result.session.id,
        settings.session_timeout_minutes * 60,
    )
    set_csrf_cookie(response, settings, result.csrf_token)


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in AUTH_COOKIE_NAMES:
        response.delete_cookie(
            name,
            path="/",
            secure=settings.is_production,
            httponly=name != CSRF_COOKIE_NAME,
            samesite=settings.cookie_samesite,
        )


def _token_payload(result: LoginResult) -> TokenResponse:
    return TokenResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in_seconds=result.expires_in_seconds,
        session_id=result.session.id,
        user_id=result.user.id,
        role=result.user.role,
        csrf_token=result.csrf_token,
    )


async def get_auth_context(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
    session_id: Optional[str] = Cookie(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, access_token, session_id)


async def get_admin_context(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    runtime = get_runtime()
    await runtime.auth.require_role(ctx, "admin", resource="audit")
    return ctx


# -- login / refresh / logout ----------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login.

    Raises:
        401: invalid credentials
        403: account disabled
        429: too many failed attempts for this identity and address
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.login_identity, body.password, **_client_meta(request))
    apply_auth_cookies(response, runtime.settings, result)
    return Envelope(status="ok", data=_token_payload(result))


@router.post("/auth/login/pin", response_model=Envelope, tags=["auth"])
async def login_with_pin(body: PinLoginRequest, request: Request, response: Response):
    """PIN login for till staff. Locks the PIN after repeated mismatches (403)."""
    runtime = get_runtime()
    result = await runtime.auth.login_with_pin(body.user_id, body.pin, **_client_meta(request))
    apply_auth_cookies(response, runtime.settings, result)
    return Envelope(status="ok", data=_token_payload(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
    session_id: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    token = refresh_token or (body.refresh_token if body else None)
    try:
        result = await runtime.auth.refresh(token, session_id, **_client_meta(request))
    except ServiceError as exc:
        failure = service_error_response(request, exc)
        clear_auth_cookies(failure, runtime.settings)
        return failure
    except Exception as exc:
        logger.exception("refresh_failed", error_type=type(exc).__name__)
        failure = error_response(500, "internal server error", code="internal_error")
        clear_auth_cookies(failure, runtime.settings)
        return failure
    apply_auth_cookies(response, runtime.settings, result)
    return Envelope(status="ok", data=_token_payload(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
    refresh_token: Optional[str] = Cookie(None),
    session_id: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    bearer = None
    if authorization and authorization.lower().startswith("bearer "):
        bearer = authorization[7:].strip()
    try:
        await runtime.auth.logout(
            bearer or access_token,
            refresh_token,
            session_id,
            **_client_meta(request),
        )
    except Exception as exc:
        logger.error(
            "logout_cleanup_failed",
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
    result = JSONResponse(content=Envelope(status="ok", data={"logged_out": True}).model_dump(mode="json"))
    clear_auth_cookies(result, runtime.settings)
    return result


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(
    request: Request,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
    session_id: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    token = access_token
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        token = credentials.strip() if scheme.lower() == "bearer" else None
    ctx = await runtime.auth.verify(token, session_id, **_client_meta(request))
    return Envelope(
        status="ok",
        data=VerifyResponse(user_id=ctx.user_id, role=ctx.role, session_id=ctx.session_id),
    )


@router.get("/auth/csrf-token", response_model=Envelope, tags=["auth"])
async def csrf_token(response: Response, session_id: Optional[str] = Cookie(None)):
    """Issue a CSRF token bound to the caller's session cookie."""
    runtime = get_runtime()
    if not session_id:
        session_id = f"anon-{secrets.token_urlsafe(24)}"
        _set_cookie(
            response,
            runtime.settings,
            SESSION_COOKIE_NAME,
            session_id,
            runtime.settings.csrf_token_ttl_minutes * 60,
        )
    token = await runtime.csrf.issue(session_id)
    set_csrf_cookie(response, runtime.settings, token)
    response.headers["X-CSRF-Token"] = token
    return Envelope(status="ok", data=CsrfTokenResponse(csrf_token=token, session_id=session_id))


# -- sessions --------------------------------------------------------------


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(ctx)
    return Envelope(status="ok", data={"sessions": [SessionInfo(**s) for s in sessions]})


@router.post("/auth/sessions/terminate-others", response_model=Envelope, tags=["sessions"])
async def terminate_other_sessions(
    response: Response, ctx: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    outcome = await runtime.auth.terminate_other_sessions(ctx)
    _set_cookie(
        response,
        runtime.settings,
        REFRESH_COOKIE_NAME,
        outcome.refresh_token,
        runtime.settings.refresh_token_ttl_days * 24 * 60 * 60,
    )
    return Envelope(status="ok", data=TerminateOthersResponse(terminated=outcome.count))


@router.delete("/auth/sessions/{target_session_id}", response_model=Envelope, tags=["sessions"])
async def terminate_session(
    response: Response,
    target_session_id: str = Path(..., min_length=1, max_length=128),
    ctx: AuthContext = Depends(get_auth_context),
):
    # Named apart from the session_id cookie read by get_auth_context
    runtime = get_runtime()
    await runtime.auth.terminate_session(ctx, target_session_id)
    if target_session_id == ctx.session_id:
        clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"terminated": True, "session_id": target_session_id})


@router.get("/auth/sessions/{target_session_id}/activity", response_model=Envelope, tags=["sessions"])
async def session_activity(
    target_session_id: str = Path(..., min_length=1, max_length=128),
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    activity = await runtime.auth.list_activity(ctx, target_session_id)
    return Envelope(
        status="ok",
        data={
            "activity": [
                SessionActivityInfo(id=a.id, type=a.type, created_at=a.created_at, details=a.details)
                for a in activity
            ]
        },
    )


@router.post("/auth/pin", response_model=Envelope, tags=["auth"])
async def set_pin(body: SetPinRequest, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    strength = await runtime.auth.set_pin(ctx, body.pin)
    return Envelope(status="ok", data=PinStrengthResponse(strength=strength.value))


# -- audit -----------------------------------------------------------------


@router.get("/audit/events", response_model=Envelope, tags=["audit"])
async def audit_events(
    category: Optional[str] = None,
    type: Optional[str] = None,
    user_id: Optional[str] = None,
    severity: Optional[str] = None,
    status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    ctx: AuthContext = Depends(get_admin_context),
):
    runtime = get_runtime()
    criteria = AuditQuery(
        category=category,
        type=type,
        user_id=user_id,
        severity=severity,
        status=status,
        start=start,
        end=end,
    )
    result = await runtime.audit.query(criteria, limit, offset)
    return Envelope(
        status="ok",
        data=AuditQueryResponse(
            events=[AuditEventInfo(**asdict(e)) for e in result.events],
            total=result.total,
            limit=limit,
            offset=offset,
        ),
    )


@router.get("/audit/export", response_model=Envelope, tags=["audit"])
async def audit_export(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    ctx: AuthContext = Depends(get_admin_context),
):
    runtime = get_runtime()
    events = await runtime.audit.export(start, end)
    return Envelope(
        status="ok",
        data={"events": [AuditEventInfo(**asdict(e)) for e in events], "count": len(events)},
    )
