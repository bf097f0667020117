# FILE: dicehouse/schemas.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .ledger import Game, Receipt
from .stats import ContractStats, PlayerStats


# =============================================================================
# Requests
# =============================================================================


class BetRequest(BaseModel):
    """
    One wager. Amounts are integers in base units; range checks happen in the
    ledger so that every rejection carries the same error shape.
    """

    player: str = Field(..., description="Player identity the bet is settled for")
    stake: int = Field(..., description="Stake in base units")
    prediction: int = Field(..., description="Predicted die face, 1..6")

    class Config:
        extra = "forbid"


class FundsRequest(BaseModel):
    """Value sent to the house outside of a bet."""

    sender: str = Field(..., description="Identity the funds came from")
    amount: int = Field(..., description="Amount in base units")

    class Config:
        extra = "forbid"


class TreasuryRequest(BaseModel):
    amount: int = Field(..., description="Amount in base units")

    class Config:
        extra = "forbid"


# =============================================================================
# Responses
# =============================================================================


class GameView(BaseModel):
    id: int
    player: str
    stake: int
    prediction: int
    outcome: int
    won: bool
    payout: int
    timestamp: float

    class Config:
        extra = "ignore"

    @classmethod
    def from_game(cls, game: Game) -> "GameView":
        return cls(**game.as_dict())


class ReceiptView(BaseModel):
    """
    A resolved game bound into the receipt chain.

    `head` hashes the game together with `prev`, the head of the game before
    it (None for the first game).
    """

    game: GameView
    head: str = Field(..., description="Receipt head of this game")
    prev: Optional[str] = Field(None, description="Receipt head of the previous game")

    class Config:
        extra = "ignore"

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> "ReceiptView":
        return cls(game=GameView.from_game(receipt.game), head=receipt.head, prev=receipt.prev)


class GamesPage(BaseModel):
    items: List[GameView] = Field(default_factory=list)
    next_game_id: int


class PlayerStatsView(BaseModel):
    player: str
    wins: int
    losses: int
    win_rate: int = Field(..., description="Whole percent of games won, truncated")
    total_games: int

    @classmethod
    def from_stats(cls, player: str, stats: PlayerStats) -> "PlayerStatsView":
        return cls(
            player=player,
            wins=stats.wins,
            losses=stats.losses,
            win_rate=stats.win_rate,
            total_games=stats.total_games,
        )


class ContractStatsView(BaseModel):
    total_games: int
    total_held_funds: int
    house_balance: int
    total_volume: int

    @classmethod
    def from_stats(cls, stats: ContractStats) -> "ContractStatsView":
        return cls(
            total_games=stats.total_games,
            total_held_funds=stats.total_held_funds,
            house_balance=stats.house_balance,
            total_volume=stats.total_volume,
        )


class BalanceResponse(BaseModel):
    house_balance: int


class EventsResponse(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list)


class AuditResponse(BaseModel):
    audit: Dict[str, Any]
    chain: Dict[str, Any]


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Machine-readable reason code")
    detail: str = Field("", description="Human-readable explanation")
