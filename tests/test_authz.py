"""Role checks, admin tokens and the request rate limiter."""

import pytest

from api.ratelimit import RateLimiter
from core.authz import AdminTokenService, Principal, require
from core.errors import AuthenticationError, AuthorizationError

from conftest import ADMIN, BULK_ISSUER, ISSUER


def test_issuers_may_mint_and_act_on_their_own_identities(role_authz):
    assert role_authz.can_mint(ISSUER)
    assert role_authz.can_mint(BULK_ISSUER)
    assert not role_authz.can_mint("rogue")

    assert role_authz.can_revoke(ISSUER, ISSUER)
    assert not role_authz.can_revoke(BULK_ISSUER, ISSUER)
    assert role_authz.can_renew(ISSUER, ISSUER)
    assert not role_authz.can_renew("rogue", ISSUER)


def test_admins_may_act_on_any_identity(role_authz):
    assert role_authz.is_admin(ADMIN)
    assert not role_authz.is_admin(ISSUER)
    assert role_authz.can_revoke(ADMIN, ISSUER)
    assert role_authz.can_renew(ADMIN, BULK_ISSUER)
    assert not role_authz.can_mint(ADMIN)


def test_grant_adds_roles(role_authz):
    role_authz.grant("new-issuer", "issuer")
    assert role_authz.can_mint("new-issuer")
    assert role_authz.roles_for("new-issuer") == {"issuer"}


def test_permissive_checker_allows_everything(permissive_authz):
    assert permissive_authz.can_mint("anyone")
    assert permissive_authz.can_revoke("anyone", "someone-else")
    assert permissive_authz.is_admin("anyone")


def test_require_raises_with_code():
    require(True, "fine")
    with pytest.raises(AuthorizationError) as exc:
        require(False, "denied", code="ISSUER_NOT_AUTHORIZED")
    assert exc.value.code == "ISSUER_NOT_AUTHORIZED"


# ─── Tokens ───────────────────────────────────────────────────────────────────


def test_token_round_trip():
    tokens = AdminTokenService("s" * 40)
    principal = tokens.decode(tokens.create_token("alice", ["issuer", "admin"]))
    assert principal == Principal(subject="alice", roles=["issuer", "admin"])
    assert tokens.require_admin(tokens.create_token("alice")).subject == "alice"


def test_token_signed_with_another_secret_is_rejected():
    token = AdminTokenService("a" * 40).create_token("alice")
    with pytest.raises(AuthenticationError) as exc:
        AdminTokenService("b" * 40).decode(token)
    assert exc.value.code == "INVALID_TOKEN"
    assert exc.value.status_code == 401


def test_expired_token_is_rejected():
    tokens = AdminTokenService("s" * 40, expiry_minutes=-1)
    with pytest.raises(AuthenticationError):
        tokens.decode(tokens.create_token("alice"))


def test_require_admin_denies_other_roles():
    tokens = AdminTokenService("s" * 40)
    with pytest.raises(AuthorizationError) as exc:
        tokens.require_admin(tokens.create_token("alice", ["issuer"]))
    assert exc.value.code == "ADMIN_ACCESS_DENIED"
    assert exc.value.status_code == 403


# ─── Rate limiter ─────────────────────────────────────────────────────────────


class Ticker:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_rate_limiter_sliding_window():
    clock = Ticker()
    limiter = RateLimiter(window_seconds=60, clock=clock)

    assert limiter.hit("admin:1.2.3.4", 2)
    clock.now += 30
    assert limiter.hit("admin:1.2.3.4", 2)
    assert not limiter.hit("admin:1.2.3.4", 2)
    assert limiter.retry_after("admin:1.2.3.4") == 31

    # other clients have their own window
    assert limiter.hit("admin:5.6.7.8", 2)

    clock.now += 31
    assert limiter.hit("admin:1.2.3.4", 2)


def test_rate_limiter_reset():
    limiter = RateLimiter(window_seconds=60, clock=Ticker())
    limiter.hit("k", 1)
    assert not limiter.hit("k", 1)
    limiter.reset("k")
    assert limiter.hit("k", 1)
    limiter.reset()
    assert limiter.retry_after("k") == 0


def test_rate_limiter_drops_windows_of_quiet_clients():
    clock = Ticker()
    limiter = RateLimiter(window_seconds=60, clock=clock)
    limiter.hit("ledger:10.0.0.1", 5)
    limiter.hit("ledger:10.0.0.2", 5)

    clock.now += 61
    assert limiter.hit("ledger:10.0.0.3", 5)
    assert set(limiter._windows) == {"ledger:10.0.0.3"}
