"""Request gatekeeper middleware.

Runs for every request in a fixed order: CORS preflight, rate limit,
authorization. Security headers are applied to whatever response comes out,
including the short-circuited ones.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from urllib.parse import quote

from fastapi import Request, Response
from fastapi.responses import RedirectResponse
from redis.exceptions import RedisError

from storegate.api.error_handling import UNAVAILABLE_MESSAGE, error_response
from storegate.config import Settings
from storegate.logging import get_logger
from storegate.service.rate_limit import RateLimitDecision, client_identity
from storegate.service.runtime import get_runtime
from storegate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

SESSION_COOKIE = "session_token"
REFRESHED_TOKEN_HEADER = "X-Session-Token"
LOGIN_PATH = "/auth/login"

# Matched as exact paths or as prefixes on a "/" boundary. "/" itself is exact-only.
PUBLIC_PATHS = ("/auth/login", "/auth/register", "/api/auth", "/api/health")

PREFLIGHT_METHODS = "GET,OPTIONS,PATCH,DELETE,POST,PUT"
PREFLIGHT_HEADERS = "Content-Type, Authorization"
PREFLIGHT_MAX_AGE = "86400"

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: https:; font-src 'self'; object-src 'none'; "
    "base-uri 'self'; form-action 'self'; frame-ancestors 'none'"
)
HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"


def is_public_path(path: str) -> bool:
    if path == "/":
        return True
    for prefix in PUBLIC_PATHS:
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


def extract_session_token(request: Request) -> Optional[str]:
    """Bearer token if present, otherwise the session cookie."""
    authorization = request.headers.get("Authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    cookie = request.cookies.get(SESSION_COOKIE)
    return cookie or None


def set_session_cookie(
    response: Response, token: str, expires: datetime, settings: Settings
) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        expires=expires,
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="lax",
    )


def allowed_origin(origin: Optional[str], allowed: List[str]) -> Optional[str]:
    """Value for Access-Control-Allow-Origin, or None when the origin gets nothing.

    A wildcard configuration answers with a literal ``*``, never the caller's origin.
    """
    if not origin:
        return None
    if origin.rstrip("/") in allowed:
        return origin
    if "*" in allowed:
        return "*"
    return None


def apply_security_headers(response: Response, *, production: bool) -> None:
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=()"
    )
    response.headers.setdefault("Content-Security-Policy", CONTENT_SECURITY_POLICY)
    if production:
        response.headers.setdefault("Strict-Transport-Security", HSTS_VALUE)


def _apply_cors_headers(response: Response, origin: Optional[str]) -> None:
    if not origin:
        return
    response.headers["Access-Control-Allow-Origin"] = origin
    # credentials are never combined with a wildcard
    if origin != "*":
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers.setdefault("Vary", "Origin")


def _preflight_response(request: Request, settings: Settings) -> Response:
    origin = allowed_origin(request.headers.get("Origin"), settings.allowed_origins)
    response = Response(status_code=200)
    response.headers["Access-Control-Allow-Origin"] = origin or settings.allowed_origins[0]
    response.headers["Access-Control-Allow-Methods"] = PREFLIGHT_METHODS
    response.headers["Access-Control-Allow-Headers"] = PREFLIGHT_HEADERS
    response.headers["Access-Control-Max-Age"] = PREFLIGHT_MAX_AGE
    if origin and origin != "*":
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
    return response


def _wants_html(request: Request) -> bool:
    if request.method not in {"GET", "HEAD"}:
        return False
    return "text/html" in request.headers.get("Accept", "")


def _login_redirect(request: Request) -> RedirectResponse:
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    return RedirectResponse(
        f"{LOGIN_PATH}?callbackUrl={quote(target, safe='')}", status_code=307
    )


async def _check_rate_limit(request: Request, runtime) -> Optional[RateLimitDecision]:
    client_id = client_identity(
        request.headers.get("X-Forwarded-For"),
        request.client.host if request.client else None,
    )
    try:
        decision = await runtime.rate_limiter.hit(client_id)
    except RedisError as exc:
        # Shared counter unreachable; the request is let through
        logger.warning("rate_limit_backend_failed", error=str(exc))
        return None
    if not decision.allowed:
        logger.warning(
            "rate_limit_exceeded",
            client=client_id,
            path=request.url.path,
            retry_after=decision.retry_after_seconds,
        )
    return decision


async def gatekeeper(request: Request, call_next):
    runtime = get_runtime()
    settings = runtime.settings
    origin = allowed_origin(request.headers.get("Origin"), settings.allowed_origins)

    def _finish(response: Response) -> Response:
        apply_security_headers(response, production=settings.is_production)
        _apply_cors_headers(response, origin)
        return response

    if request.method == "OPTIONS":
        return _finish(_preflight_response(request, settings))

    decision = await _check_rate_limit(request, runtime)
    if decision is not None and not decision.allowed:
        return _finish(
            error_response(
                429,
                "too many requests, please try again later",
                code="rate_limited",
                headers=decision.headers(),
            )
        )

    path = request.url.path
    refreshed_token = None
    request.state.session = None
    if not is_public_path(path):
        try:
            view = await runtime.issuer.resolve_async(extract_session_token(request))
        except StoreUnavailable:
            return _finish(
                error_response(503, UNAVAILABLE_MESSAGE, code="service_unavailable")
            )
        if view is None:
            logger.info("access_denied", path=path, method=request.method)
            if _wants_html(request):
                return _finish(_login_redirect(request))
            return _finish(
                error_response(401, "authentication required", code="unauthorized")
            )
        request.state.session = view
        refreshed_token = view.refreshed_token

    try:
        response = await call_next(request)
    except Exception as exc:
        # rendered here so the 500 still gets the security and CORS headers
        logger.exception(
            "unhandled_exception",
            path=path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _finish(
            error_response(500, "internal server error", code="server_error")
        )
    if refreshed_token and request.state.session is not None:
        set_session_cookie(response, refreshed_token, request.state.session.expires, settings)
        response.headers[REFRESHED_TOKEN_HEADER] = refreshed_token
    if decision is not None:
        for name, value in decision.headers().items():
            response.headers.setdefault(name, value)
    return _finish(response)


__all__ = [
    "PUBLIC_PATHS",
    "SESSION_COOKIE",
    "apply_security_headers",
    "clear_session_cookie",
    "extract_session_token",
    "gatekeeper",
    "is_public_path",
    "set_session_cookie",
]
