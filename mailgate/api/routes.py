from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from mailgate.api.schemas import (
    Envelope,
    LoginResponse,
    LogoutRequest,
    RefreshRequest,
    RequestCodeRequest,
    RequestCodeResponse,
    TokensResponse,
    UserResponse,
    VerifyCodeRequest,
)
from mailgate.config import Settings
from mailgate.logging import get_logger
from mailgate.service.auth import AuthContext
from mailgate.service.runtime import Runtime
from mailgate.service.tokens import TokenPair
from mailgate.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _is_cookie_mode(x_auth_method: Optional[str]) -> bool:
    return (x_auth_method or "").strip().lower() == "cookie"


def _origin_key(request: Request, settings: Settings) -> str:
    """Network origin used for per-origin throttling."""
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else "unknown"


def _user_payload(user: User) -> UserResponse:
    return UserResponse(id=user.id, email=user.email, last_login_at=user.last_login_at)


def _tokens_payload(tokens: TokenPair, *, include_tokens: bool) -> TokensResponse:
    return TokensResponse(
        access_token=tokens.access_token if include_tokens else None,
        refresh_token=tokens.refresh_token if include_tokens else None,
        access_token_expires_at=tokens.access_expires_at,
        refresh_token_expires_at=tokens.refresh_expires_at,
    )


def _apply_token_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=int(settings.access_token_ttl.total_seconds()),
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=int(settings.refresh_token_ttl.total_seconds()),
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        path="/v1/auth",
    )


def _clear_token_cookies(response: Response, settings: Settings) -> None:
    for name, path in ((ACCESS_COOKIE, "/"), (REFRESH_COOKIE, "/v1/auth")):
        response.delete_cookie(
            name,
            path=path,
            secure=settings.cookie_secure,
            samesite=settings.cookie_samesite,
        )


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    if not authorization and request.cookies.get(ACCESS_COOKIE):
        authorization = f"Bearer {request.cookies[ACCESS_COOKIE]}"
    return runtime.auth.authenticate(authorization)


@router.post("/auth/request-code", response_model=Envelope, tags=["auth"])
async def request_code(
    body: RequestCodeRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """Email a one-time login code.

    Raises:
        429: rate limit exceeded or resend cooldown active
        500: the email could not be delivered
    """
    result = await runtime.auth.request_code(
        body.email, _origin_key(request, runtime.settings)
    )
    data = RequestCodeResponse(
        expires_in_minutes=result.expires_in_minutes,
        cooldown_seconds=result.cooldown_seconds,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True, mode="json"))


@router.post("/auth/verify-code", response_model=Envelope, tags=["auth"])
async def verify_code(
    body: VerifyCodeRequest,
    request: Request,
    response: Response,
    x_auth_method: Optional[str] = Header(None, alias="X-Auth-Method"),
    runtime: Runtime = Depends(get_runtime),
):
    """Exchange a valid code for a user profile and an access/refresh pair.

    In cookie mode the tokens are set as httpOnly cookies and omitted from
    the body.
    """
    result = await runtime.auth.verify_code_and_login(
        body.email, body.code, _origin_key(request, runtime.settings)
    )
    cookie_mode = _is_cookie_mode(x_auth_method)
    if cookie_mode:
        _apply_token_cookies(response, result.tokens, runtime.settings)
    data = LoginResponse(
        user=_user_payload(result.user),
        tokens=_tokens_payload(result.tokens, include_tokens=not cookie_mode),
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True, mode="json"))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    x_auth_method: Optional[str] = Header(None, alias="X-Auth-Method"),
    runtime: Runtime = Depends(get_runtime),
):
    cookie_mode = _is_cookie_mode(x_auth_method)
    token = body.refresh_token if body else None
    if not token and cookie_mode:
        token = request.cookies.get(REFRESH_COOKIE)
    tokens = await runtime.auth.refresh_session(token)
    if cookie_mode:
        _apply_token_cookies(response, tokens, runtime.settings)
    data = _tokens_payload(tokens, include_tokens=not cookie_mode)
    return Envelope(status="ok", data=data.model_dump(by_alias=True, mode="json"))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    token = body.refresh_token if body else None
    token = token or request.cookies.get(REFRESH_COOKIE)
    await runtime.auth.logout(token)
    _clear_token_cookies(response, runtime.settings)
    return Envelope(status="ok", data={})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke every refresh token belonging to the caller."""
    revoked = await runtime.auth.logout_everywhere(principal.user_id)
    _clear_token_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"revokedSessions": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.get_profile(principal.user_id)
    return Envelope(
        status="ok", data=_user_payload(user).model_dump(by_alias=True, mode="json")
    )
