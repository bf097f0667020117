# dicehouse/treasury.py
from __future__ import annotations

import logging

from .auth import TREASURY_SCOPE, AuthContext
from .ledger import AuthorizationError, Ledger, ValidationError, _is_utf8

logger = logging.getLogger(__name__)


class TreasuryControl:
    """
    Privileged house-treasury operations on one ledger.

    deposit/withdraw require an AuthContext carrying the treasury scope and
    are rejected before any mutation otherwise. Funds arriving outside of a
    bet go through receive_unsolicited_funds, which anyone may call.
    """

    def __init__(self, ledger: Ledger):
        self._ledger = ledger

    @staticmethod
    def _require(auth: AuthContext, op: str) -> None:
        if auth is None or not auth.has_scope(TREASURY_SCOPE):
            principal = getattr(auth, "principal", None)
            logger.warning("treasury %s denied", op, extra={"actor": principal})
            raise AuthorizationError(f"{op} requires the {TREASURY_SCOPE!r} scope")

    def deposit(self, amount: int, auth: AuthContext) -> int:
        """Add `amount` to the house balance; returns the new balance."""
        self._require(auth, "deposit")
        return self._ledger._credit_house(amount, actor=auth.principal, kind="deposit")

    def withdraw(self, amount: int, auth: AuthContext) -> int:
        """Pay `amount` of house balance out to the caller; returns the new balance."""
        self._require(auth, "withdraw")
        return self._ledger._debit_house(amount, actor=auth.principal)

    def receive_unsolicited_funds(self, amount: int, sender: str) -> int:
        if not isinstance(sender, str) or not sender.strip() or not _is_utf8(sender):
            raise ValidationError("sender must be non-empty UTF-8 text", reason="sender")
        return self._ledger._credit_house(amount, actor=sender, kind="receive")
