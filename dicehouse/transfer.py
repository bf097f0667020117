# dicehouse/transfer.py
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)


class TransferGateway:
    """
    Outbound value transfer capability.

    Contract:
      - returns True when `amount` reached `to`, False when nothing moved;
      - never partially applies; raising is treated like a failure by the
        ledger and triggers a rollback.
    """

    def transfer(self, to: str, amount: int) -> bool:
        raise NotImplementedError


class PayoutBook(TransferGateway):
    """
    In-memory gateway that credits recipient accounts.

    Used by the HTTP service in single-process deployments and by tests.
    `pause()` simulates an unavailable payment rail: transfers return False
    until `resume()`.
    """

    def __init__(self) -> None:
        self._balances: Dict[str, int] = {}
        self._journal: List[Tuple[str, int]] = []
        self._paused = False
        self._lock = threading.Lock()

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def transfer(self, to: str, amount: int) -> bool:
        if amount <= 0:
            return False
        with self._lock:
            if self._paused:
                logger.warning("payout rail paused; transfer to %s refused", to)
                return False
            self._balances[to] = self._balances.get(to, 0) + int(amount)
            self._journal.append((to, int(amount)))
            return True

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def transfers(self) -> List[Tuple[str, int]]:
        with self._lock:
            return list(self._journal)
