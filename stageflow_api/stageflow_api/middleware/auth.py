"""Bearer-token authentication for every non-public endpoint.

The middleware validates ``Authorization: Bearer <token>`` with
:class:`~stageflow_api.security.TokenManager` and stores the caller's
``sub``, ``tenant_id``, ``role`` and ``identity_kind`` on
``request.state``.  There is a single code path: no feature flag or
legacy mode can bypass it.

The Stripe webhook endpoint is public here because it authenticates each
request by its provider signature instead.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from stageflow_api.security import TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/metrics",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhooks",
    }
)

_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs/",
    "/redoc/",
)


def is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    Returns 401 for a missing, malformed or forged token and 403 for an
    expired one.
    """

    def __init__(self, app: Any, *, token_secret: SecretStr) -> None:
        super().__init__(app)
        self._token_manager = TokenManager(token_secret)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(status_code=401, content={"detail": "Missing Authorization header"})

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._token_manager.validate_token(parts[1].strip())
        except PermissionError as exc:
            if "expired" in str(exc).lower():
                return JSONResponse(status_code=403, content={"detail": "Token has expired"})
            logger.info("Rejected bearer token on %s: %s", request.url.path, exc)
            return JSONResponse(status_code=401, content={"detail": "Invalid token"})

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.identity_kind = claims.identity_kind

        # Least privilege when the issuer omitted the role.
        role_value = claims.role
        if not role_value:
            role_value = "service" if claims.identity_kind == "service" else "viewer"
        request.state.role = role_value

        return await call_next(request)
