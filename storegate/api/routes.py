from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse

from storegate.api.gatekeeper import (
    LOGIN_PATH,
    REFRESHED_TOKEN_HEADER,
    clear_session_cookie,
    extract_session_token,
    set_session_cookie,
)
from storegate.api.schemas import (
    Envelope,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    ProviderResponse,
    RegisterRequest,
    RoleUpdateRequest,
    SessionResponse,
    UserListResponse,
    UserResponse,
    VerifyTokenRequest,
)
from storegate.logging import get_logger
from storegate.service.auth import OAuthStrategy, register_user
from storegate.service.errors import (
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from storegate.service.runtime import get_runtime
from storegate.service.sessions import Redemption, SessionView, validate_redirect
from storegate.storage.models import Role

logger = get_logger(__name__)

router = APIRouter()


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


def _session_response(view: SessionView) -> SessionResponse:
    return SessionResponse(
        user=IdentityResponse(**view.identity.to_dict()),
        expires=view.expires,
    )


async def get_session(request: Request) -> SessionView:
    """Session resolved by the gatekeeper for protected paths."""
    view = getattr(request.state, "session", None)
    if view is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return view


async def get_admin_session(session: SessionView = Depends(get_session)) -> SessionView:
    if session.role != Role.ADMIN:
        logger.warning("admin_access_denied", user_id=session.user_id)
        raise _http_error("forbidden", "admin access required", status_code=403)
    return session


@router.get("/", response_model=Envelope)
async def index():
    return Envelope(status="ok", data={"service": "storegate"})


@router.get("/auth/login", response_model=Envelope, tags=["auth"])
async def login_page(callback_url: Optional[str] = Query(None, alias="callbackUrl")):
    """Sign-in entry point: the enabled providers and where to go afterwards."""
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={
            "providers": [p.model_dump() for p in _providers(runtime)],
            "callback_url": validate_redirect(callback_url, runtime.settings.app_base_url),
        },
    )


def _providers(runtime) -> list[ProviderResponse]:
    providers = []
    for strategy in runtime.strategies.values():
        described = strategy.describe()
        signin_url = None
        if isinstance(strategy, OAuthStrategy):
            signin_url = f"/api/auth/signin/{strategy.name}"
        providers.append(ProviderResponse(signin_url=signin_url, **described))
    return providers


@router.post("/api/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a credentials user with the USER role.

    Raises:
        400: If a field fails validation
        409: If the email is already registered
    """
    runtime = get_runtime()
    user = await asyncio.to_thread(
        register_user,
        runtime.store,
        runtime.hasher,
        name=body.name,
        email=body.email,
        password=body.password,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/api/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Sets the session cookie and returns the same token for bearer use.

    Raises:
        401: For any credential failure, with one message
    """
    runtime = get_runtime()
    identity = await runtime.credentials.authorize(body.email, body.password)
    if identity is None:
        raise InvalidCredentialsError()
    issued = await runtime.issuer.issue_async(identity, provider="credentials")
    set_session_cookie(response, issued.token, issued.expires, runtime.settings)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=IdentityResponse(**identity.to_dict()),
            session_token=issued.token,
            expires=issued.expires,
        ),
    )


@router.post("/api/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    signed_out = await runtime.issuer.sign_out_async(extract_session_token(request))
    clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"signed_out": signed_out})


@router.get("/api/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(request: Request, response: Response):
    runtime = get_runtime()
    view = await runtime.issuer.resolve_async(extract_session_token(request))
    if view is None:
        return Envelope(status="ok", data=None)
    if view.refreshed_token:
        set_session_cookie(response, view.refreshed_token, view.expires, runtime.settings)
        response.headers[REFRESHED_TOKEN_HEADER] = view.refreshed_token
    return Envelope(status="ok", data=_session_response(view))


@router.get("/api/auth/providers", response_model=Envelope, tags=["auth"])
async def providers():
    runtime = get_runtime()
    return Envelope(status="ok", data=_providers(runtime))


def _oauth_strategy(runtime, provider: str) -> OAuthStrategy:
    strategy = runtime.oauth(provider)
    if strategy is None:
        raise NotFoundError("provider not found", detail={"provider": provider})
    return strategy


@router.get("/api/auth/signin/{provider}", tags=["auth"])
async def oauth_signin(
    provider: str,
    callback_url: Optional[str] = Query(None, alias="callbackUrl", max_length=2048),
):
    runtime = get_runtime()
    strategy = _oauth_strategy(runtime, provider)
    target = validate_redirect(callback_url, runtime.settings.app_base_url)
    return RedirectResponse(strategy.start(target), status_code=302)


@router.get("/api/auth/callback/{provider}", tags=["auth"])
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish the provider round trip and land on the remembered callback URL."""
    runtime = get_runtime()
    strategy = _oauth_strategy(runtime, provider)
    result = None
    if code and state and not error:
        result = await strategy.complete(code, state)
    if result is None:
        logger.warning("oauth_callback_failed", provider=provider, provider_error=error)
        return RedirectResponse(f"{LOGIN_PATH}?error=oauth_failed", status_code=302)
    issued = await runtime.issuer.issue_async(
        result.identity, provider=provider, is_new_user=result.is_new_user
    )
    redirect = RedirectResponse(
        validate_redirect(result.callback_url, runtime.settings.app_base_url),
        status_code=302,
    )
    set_session_cookie(redirect, issued.token, issued.expires, runtime.settings)
    return redirect


@router.post("/api/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_token(body: VerifyTokenRequest):
    runtime = get_runtime()
    outcome = await asyncio.to_thread(
        runtime.verification.redeem, body.identifier, body.token
    )
    if outcome != Redemption.REDEEMED:
        raise ValidationError(
            "invalid or expired token", detail={"reason": outcome.value}
        )
    return Envelope(status="ok", data={"verified": True, "identifier": body.identifier})


@router.get("/api/me", response_model=Envelope, tags=["account"])
async def me(session: SessionView = Depends(get_session)):
    return Envelope(status="ok", data=_session_response(session))


@router.get("/api/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    session: SessionView = Depends(get_admin_session),
):
    runtime = get_runtime()
    users = await asyncio.to_thread(runtime.store.list_users, limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_user(u) for u in users]),
    )


@router.patch("/api/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    user_id: str,
    body: RoleUpdateRequest,
    session: SessionView = Depends(get_admin_session),
):
    """Change a user's role and revoke their database sessions."""
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.store.update_user, user_id, role=body.role)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    revoked = await asyncio.to_thread(runtime.store.delete_user_sessions, user_id)
    logger.info(
        "user_role_changed",
        user_id=user_id,
        role=body.role.value,
        changed_by=session.user_id,
        sessions_revoked=revoked,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))
