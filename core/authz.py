"""
core/authz.py — Authorization Checks
======================================
The security gate for every ledger mutation and every admin call.
If this says NO, the ledger is never touched — period.

Roles:
    issuer — may mint credentials, and revoke / renew the ones it issued
    admin  — may revoke / renew any credential and run bulk operations

Production uses RoleAuthorizationChecker (registry lookup + token claims).
PermissiveAuthorizationChecker exists for tests only and says so loudly.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

from jose import JWTError, jwt

from core.errors import AuthenticationError, AuthorizationError

logger = logging.getLogger("digiid.authz")

ROLE_ISSUER = "issuer"
ROLE_ADMIN = "admin"


class AuthorizationChecker:
    """Capability injected into the contract and the admin API."""

    def can_mint(self, issuer_id: str) -> bool:
        raise NotImplementedError

    def can_revoke(self, actor_id: str, original_issuer: str) -> bool:
        raise NotImplementedError

    def can_renew(self, actor_id: str, original_issuer: str) -> bool:
        raise NotImplementedError

    def is_admin(self, actor_id: str) -> bool:
        raise NotImplementedError


class RoleAuthorizationChecker(AuthorizationChecker):
    """
    Role lookup against a registry of known issuers and admins.
    The original issuer of a credential may revoke or renew it; admins may
    act on any credential.
    """

    def __init__(self, issuers: Iterable[str] = (), admins: Iterable[str] = ()):
        self._roles: Dict[str, Set[str]] = {}
        for issuer_id in issuers:
            self.grant(issuer_id, ROLE_ISSUER)
        for admin_id in admins:
            self.grant(admin_id, ROLE_ADMIN)

    @classmethod
    def from_settings(cls, settings) -> "RoleAuthorizationChecker":
        return cls(issuers=settings.AUTHORIZED_ISSUERS, admins=settings.LEDGER_ADMINS)

    def grant(self, actor_id: str, role: str):
        self._roles.setdefault(actor_id, set()).add(role)

    def roles_for(self, actor_id: str) -> Set[str]:
        return set(self._roles.get(actor_id, set()))

    def is_admin(self, actor_id: str) -> bool:
        return ROLE_ADMIN in self.roles_for(actor_id)

    def can_mint(self, issuer_id: str) -> bool:
        allowed = ROLE_ISSUER in self.roles_for(issuer_id)
        if not allowed:
            logger.warning(f"MINT DENIED: {issuer_id} is not a registered issuer")
        return allowed

    def can_revoke(self, actor_id: str, original_issuer: str) -> bool:
        return self._issuer_or_admin("REVOKE", actor_id, original_issuer)

    def can_renew(self, actor_id: str, original_issuer: str) -> bool:
        return self._issuer_or_admin("RENEW", actor_id, original_issuer)

    def _issuer_or_admin(self, action: str, actor_id: str, original_issuer: str) -> bool:
        if self.is_admin(actor_id):
            return True
        if actor_id == original_issuer and ROLE_ISSUER in self.roles_for(actor_id):
            return True
        logger.warning(f"{action} DENIED: {actor_id} is neither issuer {original_issuer} nor an admin")
        return False


class PermissiveAuthorizationChecker(AuthorizationChecker):
    """Test double: allows everything. Never wire this into main.py."""

    def __init__(self):
        logger.warning("PermissiveAuthorizationChecker in use — every authorization check passes")

    def can_mint(self, issuer_id: str) -> bool:
        return True

    def can_revoke(self, actor_id: str, original_issuer: str) -> bool:
        return True

    def can_renew(self, actor_id: str, original_issuer: str) -> bool:
        return True

    def is_admin(self, actor_id: str) -> bool:
        return True


def require(allowed: bool, message: str, code: str = "UNAUTHORIZED"):
    """
    Guard form of the checks above:

        require(authz.can_mint(issuer_id), f"Issuer {issuer_id} is not authorized")
        # execution continues only if permitted
    """
    if not allowed:
        raise AuthorizationError(message, code=code)


# ── Admin credentials ─────────────────────────────────────────────────────────
@dataclass
class Principal:
    subject: str
    roles: List[str] = field(default_factory=list)

    def has_role(self, role: str) -> bool:
        return role in self.roles


class AdminTokenService:
    """Signed JWTs carrying a `roles` claim, checked on every admin endpoint."""

    def __init__(self, secret: str, algorithm: str = "HS256", expiry_minutes: int = 30):
        self.secret = secret
        self.algorithm = algorithm
        self.expiry_minutes = expiry_minutes

    @classmethod
    def from_settings(cls, settings) -> "AdminTokenService":
        return cls(settings.ADMIN_JWT_SECRET, settings.JWT_ALGORITHM, settings.JWT_EXPIRY_MINUTES)

    def create_token(self, subject: str, roles: Optional[List[str]] = None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": subject,
            "roles": roles if roles is not None else [ROLE_ADMIN],
            "iat": now,
            "exp": now + timedelta(minutes=self.expiry_minutes),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> Principal:
        """Verify and decode. Raises AuthorizationError if invalid or expired."""
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as exc:
            raise AuthenticationError("Invalid or expired admin credential", code="INVALID_TOKEN") from exc
        roles = claims.get("roles") or []
        if not isinstance(roles, list):
            roles = [roles]
        return Principal(subject=claims.get("sub", ""), roles=[str(r) for r in roles])

    def require_admin(self, token: str) -> Principal:
        principal = self.decode(token)
        require(principal.has_role(ROLE_ADMIN), "Admin access required", code="ADMIN_ACCESS_DENIED")
        return principal
