from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from youandme_auth.api.schemas import (
    ConfirmEmailRequest,
    Envelope,
    LoginRequest,
    LogoutResponse,
    RegisterRequest,
    RegisterResponse,
    RevokeSessionsResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TwoFactorChallengeResponse,
    TwoFactorDisableRequest,
    TwoFactorEnableRequest,
    TwoFactorEnableResponse,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    UserResponse,
)
from youandme_auth.logging import get_logger
from youandme_auth.service.auth import AuthContext, LoginResult, TwoFactorChallenge
from youandme_auth.service.errors import AuthenticationError, NotFoundError
from youandme_auth.service.runtime import check_rate_limit, get_runtime
from youandme_auth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    *,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Raise 429 once ``key`` has spent its budget for the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(1, reset_seconds))},
        )


def _client_metadata(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "device": request.headers.get("x-client-device") or "web",
    }


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        role=user.role,
        created_at=user.created_at,
        is_active=user.is_active,
        email_confirmed=user.email_confirmed,
    )


def _token_pair(result: LoginResult) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_at=result.expires_at,
        session_id=result.session.id,
        session_expires_at=result.session.expires_at,
        user=_user_to_response(result.user),
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.enforcer.authenticate(authorization)


async def get_admin_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.enforcer.authenticate(authorization, required_role="admin")


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account. The email must be confirmed before the first login."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user, token = await runtime.auth.register(
        body.email, body.password, display_name=body.display_name
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user_id=user.id,
            email_confirmation_required=not user.email_confirmed,
            confirmation_token=token if runtime.settings.test_mode else None,
        ),
    )


@router.post("/auth/confirm-email", response_model=Envelope, tags=["auth"])
async def confirm_email(body: ConfirmEmailRequest):
    runtime = get_runtime()
    await runtime.auth.confirm_email(body.token)
    return Envelope(status="ok", data={"confirmed": True})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for a token pair.

    Starting a session revokes every other session of the same user. When
    two-factor authentication is enabled and no code was supplied, the
    response carries a short-lived ``temp_token`` for ``/auth/login/2fa``
    instead of tokens.

    Raises:
        401: invalid credentials or two-factor code
        403: email not confirmed
        423: too many failed attempts
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.two_factor_code,
        client_metadata=_client_metadata(request),
    )
    if isinstance(result, TwoFactorChallenge):
        return Envelope(
            status="ok",
            data=TwoFactorChallengeResponse(
                temp_token=result.temp_token, expires_at=result.expires_at
            ),
        )
    return Envelope(status="ok", data=_token_pair(result))


@router.post("/auth/login/2fa", response_model=Envelope, tags=["auth"])
async def login_two_factor(body: TwoFactorLoginRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login_2fa:{body.temp_token}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.verify_two_factor(
        body.temp_token, body.code, client_metadata=_client_metadata(request)
    )
    return Envelope(status="ok", data=_token_pair(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Rotate both tokens. The presented refresh token stops working."""
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, body.access_token)
    return Envelope(status="ok", data=_token_pair(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    """Revoke the caller's session.

    Idempotent: a token whose session is already revoked or expired still
    gets a 200 with ``revoked: false``. Only a bad signature is rejected.
    """
    runtime = get_runtime()
    token = runtime.enforcer.extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    session_id = runtime.auth.session_id_from_token(token)
    revoked = await runtime.auth.logout(session_id)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_principal)):
    user = get_runtime().auth.get_user(principal.user_id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def two_factor_setup(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    setup = await runtime.auth.begin_two_factor_setup(principal.user_id)
    return Envelope(status="ok", data=TwoFactorSetupResponse(**setup))


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def two_factor_enable(
    body: TwoFactorEnableRequest, principal: AuthContext = Depends(get_principal)
):
    """Confirm the pending secret with a current code; returns one-time backup codes."""
    runtime = get_runtime()
    codes = await runtime.auth.enable_two_factor(principal.user_id, body.code)
    return Envelope(status="ok", data=TwoFactorEnableResponse(backup_codes=codes))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def two_factor_disable(
    body: TwoFactorDisableRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(principal.user_id, body.password)
    return Envelope(status="ok", data={"enabled": False})


@router.post(
    "/admin/users/{user_id}/sessions/revoke", response_model=Envelope, tags=["admin"]
)
async def admin_revoke_user_sessions(
    user_id: str, principal: AuthContext = Depends(get_admin_principal)
):
    runtime = get_runtime()
    if not runtime.store.get_user(user_id):
        raise NotFoundError("user not found", detail={"user_id": user_id})
    revoked = await runtime.auth.revoke_all_user_sessions(user_id, reason="admin")
    logger.info(
        "admin_sessions_revoked",
        admin_id=principal.user_id,
        user_id=user_id,
        count=revoked,
    )
    return Envelope(status="ok", data=RevokeSessionsResponse(user_id=user_id, revoked=revoked))
