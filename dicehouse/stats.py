# dicehouse/stats.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List

from .ledger import Game, Ledger, PlayerRecord


@dataclass(frozen=True)
class PlayerStats:
    wins: int
    losses: int
    win_rate: int  # whole percent, truncated
    total_games: int


@dataclass(frozen=True)
class ContractStats:
    total_games: int
    total_held_funds: int
    house_balance: int
    total_volume: int


class StatsAggregator:
    """
    Read-only projections over a ledger's committed view.

    Every answer is computed from a single LedgerView, so the numbers in one
    response are always mutually consistent even while bets are resolving.
    """

    def __init__(self, ledger: Ledger):
        self._ledger = ledger

    def player_stats(self, player: str) -> PlayerStats:
        rec = self._ledger.view().players.get(player, PlayerRecord())
        total = rec.total_games
        rate = rec.wins * 100 // total if total else 0
        return PlayerStats(wins=rec.wins, losses=rec.losses, win_rate=rate, total_games=total)

    def contract_stats(self) -> ContractStats:
        """
        Totals published by the last committed operation.

        Winning payouts leave house_balance untouched and only draw down
        held funds, so after wins house_balance may exceed total_held_funds.
        Withdrawals are capped by the smaller of the two.
        """
        view = self._ledger.view()
        return ContractStats(
            total_games=view.game_count,
            total_held_funds=view.held_funds,
            house_balance=view.house_balance,
            total_volume=view.total_volume,
        )

    def game_details(self, game_id: int) -> Game:
        return self._ledger.game(game_id)

    def recent_games(self, limit: int = 20) -> List[Game]:
        return self._ledger.games(limit=limit, newest_first=True)

    def player_games(self, player: str, limit: int = 20) -> List[Game]:
        return self._ledger.games(player=player, limit=limit, newest_first=True)
