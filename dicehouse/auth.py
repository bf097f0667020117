from __future__ import annotations

import hmac
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Tuple

from fastapi import Header, HTTPException
from prometheus_client import Counter

TREASURY_SCOPE = "treasury"
PLAYER_SCOPE = "player"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthContext:
    """
    Authorization grant passed into privileged ledger calls.

    Fields:
      - principal : actor identity the grant was issued for
      - scopes    : logical scopes; "treasury" unlocks deposit/withdraw
      - issued_at : timestamp (seconds since epoch) of issuance
    """

    principal: str
    scopes: Tuple[str, ...] = ()
    issued_at: float = field(default_factory=time.time)

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    @property
    def privileged(self) -> bool:
        return self.has_scope(TREASURY_SCOPE)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

_AUTH_OK = Counter("dice_auth_ok_total", "Admin auth OK")
_AUTH_FAIL = Counter("dice_auth_fail_total", "Admin auth failures", ["reason"])


# ---------------------------------------------------------------------------
# Authorizer
# ---------------------------------------------------------------------------


class Authorizer:
    """
    Issues AuthContext grants. Actors in the privileged set get the treasury
    scope; everyone else only gets the player scope.
    """

    def __init__(self, privileged: Iterable[str] = ()):
        self._privileged = frozenset(p.strip() for p in privileged if p and p.strip())

    def is_privileged(self, actor: str) -> bool:
        return actor in self._privileged

    def context_for(self, actor: str) -> AuthContext:
        if self.is_privileged(actor):
            return AuthContext(principal=actor, scopes=(TREASURY_SCOPE, PLAYER_SCOPE))
        return AuthContext(principal=actor, scopes=(PLAYER_SCOPE,))


def require_admin(
    authorizer: Authorizer,
    admin_token: Optional[str],
) -> Callable[..., AuthContext]:
    """
    FastAPI dependency factory for the admin router.

    Requires X-Dice-Admin-Token to match `admin_token` (constant-time compare)
    and resolves X-Dice-Actor into an AuthContext. Without a configured token
    every admin call is refused.
    """

    def _dep(
        token: Optional[str] = Header(default=None, alias="X-Dice-Admin-Token"),
        actor: Optional[str] = Header(default=None, alias="X-Dice-Actor"),
    ) -> AuthContext:
        want = admin_token or ""
        if not want:
            _AUTH_FAIL.labels("unconfigured").inc()
            raise HTTPException(status_code=401, detail="admin token required")
        if not token or len(token) != len(want) or not hmac.compare_digest(token, want):
            _AUTH_FAIL.labels("token").inc()
            raise HTTPException(status_code=403, detail="forbidden")
        if not actor:
            _AUTH_FAIL.labels("actor").inc()
            raise HTTPException(status_code=400, detail="X-Dice-Actor header required")
        _AUTH_OK.inc()
        return authorizer.context_for(actor)

    return _dep
