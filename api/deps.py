"""
api/deps.py — Shared FastAPI Dependencies
==========================================
Services live on app.state (built once in main.py's lifespan); routes get
them through these functions, never through module globals.

    Depends(get_issuer)           → IdentityIssuer
    Depends(get_admin)            → AdminOrchestrator
    Depends(require_admin)        → Principal with the admin role (Bearer JWT)
    Depends(require_issuer)       → Principal with the issuer or admin role
    Depends(rate_limit("admin"))  → sliding-window limit per client
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.authz import ROLE_ADMIN, ROLE_ISSUER, Principal, require
from core.errors import AuthenticationError, RateLimitError
from modules.admin import AdminOrchestrator
from modules.gateway import GatewayClient
from modules.issuance import IdentityIssuer

bearer = HTTPBearer(auto_error=False)


def get_settings(request: Request):
    return request.app.state.settings


def get_issuer(request: Request) -> IdentityIssuer:
    return request.app.state.issuer


def get_admin(request: Request) -> AdminOrchestrator:
    return request.app.state.admin


def get_gateway(request: Request) -> GatewayClient:
    return request.app.state.gateway


def rate_limit(scope: str):
    """One window per (scope, client address); admin routes use the stricter limit."""

    def dependency(request: Request):
        settings = request.app.state.settings
        limit = settings.ADMIN_RATE_LIMIT_PER_MINUTE if scope == "admin" else settings.RATE_LIMIT_PER_MINUTE
        client = request.client.host if request.client else "unknown"
        key = f"{scope}:{client}"
        limiter = request.app.state.limiter
        if not limiter.hit(key, limit):
            raise RateLimitError(
                f"Rate limit exceeded: {limit} requests per minute",
                details={"retry_after": limiter.retry_after(key)},
            )

    return dependency


def _bearer_token(credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Missing bearer token", code="MISSING_TOKEN")
    return credentials.credentials


def require_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Principal:
    return request.app.state.tokens.require_admin(_bearer_token(credentials))


def require_issuer(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Principal:
    principal = request.app.state.tokens.decode(_bearer_token(credentials))
    require(
        principal.has_role(ROLE_ISSUER) or principal.has_role(ROLE_ADMIN),
        "Issuer or admin role required",
        code="ISSUER_ACCESS_DENIED",
    )
    return principal
