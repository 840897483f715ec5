from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Response

from sessionward.api.schemas import (
    DeviceFields,
    DeviceLoginResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    OtpMeta,
    OtpResendRequest,
    PrincipalResponse,
    RefreshRequest,
    RegistrationRequest,
    RegistrationResponse,
    UserSummary,
    VerifyOtpRequest,
)
from sessionward.logging import get_logger
from sessionward.service.auth import LoginResult, Principal, extract_bearer
from sessionward.service.devices import DeviceContext
from sessionward.service.otp import OtpStatus
from sessionward.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])

REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    principal = await runtime.auth.authenticate(authorization)
    if not principal:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return principal


def _apply_refresh_cookie(response: Response, result: LoginResult) -> None:
    max_age = int((result.refresh.expires_at - result.issued_at).total_seconds())
    response.set_cookie(
        REFRESH_COOKIE,
        result.refresh_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=max(max_age, 0),
        path="/v1/auth",
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(REFRESH_COOKIE, path="/v1/auth")


def _device_context(body: DeviceFields, user_agent: Optional[str]) -> DeviceContext:
    return DeviceContext(
        device_id=body.session_id,
        client_id=body.client_id,
        location=body.location,
        provider=body.provider,
        device_type=body.device_type,
        user_agent=user_agent,
    )


def _login_response(result: LoginResult) -> LoginResponse:
    user = result.user
    return LoginResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        session_id=result.session_id,
        issued_at=result.issued_at,
        refresh_expires_at=result.refresh.expires_at,
        user=UserSummary(
            id=user.id,
            email=user.email,
            display_name=user.display_name,
            roles=[user.role],
            email_verified=user.verified,
        ),
    )


def _otp_meta(status: OtpStatus) -> OtpMeta:
    return OtpMeta(
        used=status.used,
        max=status.max,
        cooldown=status.cooldown,
        resend_interval_lock=status.resend_lock,
        resend_interval_seconds=status.resend_interval_seconds,
        cooldown_seconds=status.cooldown_seconds,
    )


@router.get("/ping", response_model=Envelope)
async def ping():
    return Envelope(status="ok", data={"message": "pong"})


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email and password.

    Returns a short-lived access token in the body and sets the refresh token
    as an HttpOnly cookie. Every rejection reason answers with the same 401.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, device=_device_context(body, user_agent)
    )
    _apply_refresh_cookie(response, result)
    return Envelope(status="ok", data=_login_response(result))


@router.post("/refresh", response_model=Envelope)
async def refresh(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate a refresh token; the presented one is spent whether or not it wins."""
    runtime = get_runtime()
    raw_token = (body.refresh_token if body else None) or refresh_cookie
    if not raw_token:
        raise _http_error("unauthorized", "invalid refresh token", status_code=401)
    result = await runtime.auth.refresh(
        raw_token, session_id=body.session_id if body else None
    )
    _apply_refresh_cookie(response, result)
    return Envelope(status="ok", data=_login_response(result))


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegistrationRequest):
    runtime = get_runtime()
    user, status = await runtime.auth.register(
        body.email, body.password, display_name=body.display_name
    )
    return Envelope(
        status="ok",
        data=RegistrationResponse(user_id=user.id, email=user.email, otp_meta=_otp_meta(status)),
    )


@router.post("/verify-otp", response_model=Envelope)
async def verify_otp(
    body: VerifyOtpRequest,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    result = await runtime.auth.verify_registration(
        body.email, body.code.strip(), device=_device_context(body, user_agent)
    )
    _apply_refresh_cookie(response, result)
    return Envelope(status="ok", data=_login_response(result))


@router.post("/resend-otp", response_model=Envelope)
async def resend_otp(body: OtpResendRequest):
    runtime = get_runtime()
    status = await runtime.auth.resend_otp(body.email)
    return Envelope(status="ok", data=_otp_meta(status))


@router.get("/otp-status", response_model=Envelope)
async def otp_status(email: str = Query(..., min_length=3, max_length=254)):
    runtime = get_runtime()
    status = await runtime.auth.otp_status(email)
    return Envelope(status="ok", data=_otp_meta(status))


@router.post("/logout", response_model=Envelope)
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    principal: Principal = Depends(get_principal),
):
    """Revoke one device's sessions, or all of them when no session id is given."""
    runtime = get_runtime()
    revoked = await runtime.auth.logout(
        principal,
        extract_bearer(authorization),
        session_id=body.session_id if body else None,
    )
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data=LogoutResponse(revoked_sessions=revoked))


@router.post("/logout-all", response_model=Envelope)
async def logout_all(response: Response, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_everywhere(principal)
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data=LogoutResponse(revoked_sessions=revoked))


@router.get("/me", response_model=Envelope)
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            subject=principal.subject,
            roles=list(principal.roles),
            token_id=principal.token_id,
            issued_at=principal.issued_at,
            expires_at=principal.expires_at,
        ),
    )


@router.get("/devices", response_model=Envelope)
async def devices(principal: Principal = Depends(get_principal)):
    """Recent logins for the caller, newest first."""
    runtime = get_runtime()
    rows = runtime.auth.list_device_logins(principal.user_id)
    return Envelope(
        status="ok",
        data=[
            DeviceLoginResponse(
                session_id=row.session_id,
                provider=row.provider,
                device_type=row.device_type,
                location=row.location,
                user_agent=row.user_agent,
                last_login_at=row.last_login_at,
            )
            for row in rows
        ],
    )
