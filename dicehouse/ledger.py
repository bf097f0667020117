# FILE: dicehouse/ledger.py
from __future__ import annotations

"""
dicehouse Ledger: bet resolution, house treasury and append-only game history.

Goals:
  - Single serial authority: every mutation runs alone under one lock
  - Reentrancy guard: a mutation triggered from inside another mutation on
    the same ledger (e.g. from the payout callback) is rejected outright
  - Bookkeeping first, outbound transfer last; a failed transfer rolls the
    whole transaction back
  - Readers see only committed snapshots (LedgerView), never a half-applied
    or later-rolled-back state
  - Receipt chain over the game history; audit helpers replay history and
    the treasury journal to recompute balances

Notes:
  - Amounts are integers in base units; all arithmetic truncates.
  - Privileged treasury operations live in TreasuryControl, which calls the
    internal credit/debit primitives here after checking authorization.
"""

from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional
import logging
import threading
import time

from prometheus_client import Counter, Gauge, Histogram

from .config import Settings
from .events import EventBus, FundsWithdrawn, GameResolved, HouseBalanceChanged
from .kv import game_receipt_hash
from .randomness import (
    FACES,
    DrawContext,
    HashRandomnessSource,
    RandomnessSource,
    outcome_from_draw,
)
from .transfer import PayoutBook, TransferGateway

logger = logging.getLogger(__name__)

# ---------- Metrics ----------

_BETS = Counter("dice_bets_resolved_total", "Resolved bets", ["result"])
_BET_REJECTED = Counter("dice_bets_rejected_total", "Rejected bets", ["reason"])
_TRANSFER_FAIL = Counter(
    "dice_transfer_fail_total",
    "Outbound transfers that failed and were rolled back",
    ["op"],
)
_REENTRY = Counter(
    "dice_reentry_rejected_total",
    "Mutations rejected because another mutation was in progress",
    ["op"],
)
_TREASURY_OPS = Counter("dice_treasury_ops_total", "Treasury operations", ["kind"])
_TX_LAT = Histogram(
    "dice_ledger_tx_latency_seconds",
    "Ledger mutation latency (seconds)",
    ["op"],
    buckets=(0.0005, 0.001, 0.002, 0.005, 0.010, 0.020, 0.050, 0.1),
)
_HOUSE = Gauge("dice_house_balance", "House balance (base units)")
_HELD = Gauge("dice_held_funds", "Total held funds (base units)")

_MAX_PLAYER_LEN = 256


def _is_utf8(text: str) -> bool:
    # lone surrogates cannot be encoded
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


# ---------- Exceptions ----------


class LedgerError(RuntimeError):
    """Base for every rejected ledger operation; the ledger stays usable."""

    reason = "ledger_error"

    def __init__(self, message: str, *, reason: Optional[str] = None):
        super().__init__(message)
        if reason:
            self.reason = reason


class ValidationError(LedgerError):
    reason = "validation"


class SolvencyError(LedgerError):
    reason = "solvency"


class TransferError(LedgerError):
    reason = "transfer"


class AuthorizationError(LedgerError):
    reason = "authorization"


class NotFoundError(LedgerError):
    reason = "not_found"


class ReentrancyError(LedgerError):
    reason = "reentrancy"


# ---------- Data Models ----------


@dataclass(frozen=True)
class Game:
    id: int
    player: str
    stake: int
    prediction: int
    outcome: int
    won: bool
    payout: int
    timestamp: float

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PlayerRecord:
    wins: int = 0
    losses: int = 0

    @property
    def total_games(self) -> int:
        return self.wins + self.losses


@dataclass(frozen=True)
class Receipt:
    game_id: int
    game: Game
    head: str
    prev: Optional[str]

    @property
    def outcome(self) -> int:
        return self.game.outcome

    @property
    def won(self) -> bool:
        return self.game.won

    @property
    def payout(self) -> int:
        return self.game.payout


@dataclass(frozen=True)
class TreasuryEntry:
    kind: str  # "deposit" | "receive" | "withdraw"
    actor: str
    amount: int
    ts: float


@dataclass
class LedgerState:
    """
    Mutable ledger state, owned by exactly one Ledger.

    game_counter starts at 0 and is pre-incremented, so ids run 1..game_counter.
    """

    game_counter: int = 0
    house_balance: int = 0
    held_funds: int = 0
    total_volume: int = 0
    history: Dict[int, Game] = field(default_factory=dict)
    heads: Dict[int, str] = field(default_factory=dict)
    players: Dict[str, PlayerRecord] = field(default_factory=dict)
    treasury: List[TreasuryEntry] = field(default_factory=list)
    chain_head: Optional[str] = None

    @property
    def next_game_id(self) -> int:
        return self.game_counter + 1


@dataclass(frozen=True)
class LedgerView:
    """Committed snapshot read by stats and lookups."""

    game_count: int
    house_balance: int
    held_funds: int
    total_volume: int
    chain_head: Optional[str]
    treasury_len: int
    players: Mapping[str, PlayerRecord]

    @property
    def next_game_id(self) -> int:
        return self.game_count + 1


@dataclass(frozen=True)
class _Checkpoint:
    game_counter: int
    house_balance: int
    held_funds: int
    total_volume: int
    chain_head: Optional[str]
    treasury_len: int
    player: Optional[str] = None
    player_record: Optional[PlayerRecord] = None


# ---------- Ledger ----------


class Ledger:
    """
    The bet-resolution authority for one LedgerState.

    Thread-safe: mutators serialize on a per-ledger RLock; readers use the
    last published LedgerView without taking the lock.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        state: Optional[LedgerState] = None,
        randomness: Optional[RandomnessSource] = None,
        gateway: Optional[TransferGateway] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or Settings()
        if state is None:
            seed = self.settings.initial_house_balance
            state = LedgerState(house_balance=seed, held_funds=seed)
        if state.house_balance < 0 or state.held_funds < 0 or state.total_volume < 0:
            raise ValidationError("ledger state balances must be non-negative", reason="state")

        self._state = state
        self._randomness = randomness or HashRandomnessSource()
        self._gateway = gateway or PayoutBook()
        self.events = events or EventBus()
        self._clock = clock

        self._mutex = threading.RLock()
        self._entered = False

        # audit replays everything after this point
        self._baseline = self._checkpoint()
        self._view = self._build_view()
        self._export_gauges()

    @property
    def gateway(self) -> TransferGateway:
        return self._gateway

    @property
    def randomness(self) -> RandomnessSource:
        return self._randomness

    # ----- mutation plumbing -----

    @contextmanager
    def _mutation(self, op: str):
        t0 = time.perf_counter()
        with self._mutex:
            if self._entered:
                _REENTRY.labels(op).inc()
                logger.warning("re-entrant %s rejected", op)
                raise ReentrancyError(
                    f"{op}: rejected, another mutation of this ledger is in progress"
                )
            self._entered = True
            try:
                yield self._state
            finally:
                self._entered = False
                _TX_LAT.labels(op).observe(time.perf_counter() - t0)

    def _checkpoint(self, player: Optional[str] = None) -> _Checkpoint:
        st = self._state
        return _Checkpoint(
            game_counter=st.game_counter,
            house_balance=st.house_balance,
            held_funds=st.held_funds,
            total_volume=st.total_volume,
            chain_head=st.chain_head,
            treasury_len=len(st.treasury),
            player=player,
            player_record=st.players.get(player) if player is not None else None,
        )

    def _rollback(self, cp: _Checkpoint) -> None:
        st = self._state
        for gid in range(cp.game_counter + 1, st.game_counter + 1):
            st.history.pop(gid, None)
            st.heads.pop(gid, None)
        st.game_counter = cp.game_counter
        st.house_balance = cp.house_balance
        st.held_funds = cp.held_funds
        st.total_volume = cp.total_volume
        st.chain_head = cp.chain_head
        del st.treasury[cp.treasury_len:]
        if cp.player is not None:
            if cp.player_record is None:
                st.players.pop(cp.player, None)
            else:
                st.players[cp.player] = cp.player_record

    def _build_view(self) -> LedgerView:
        st = self._state
        return LedgerView(
            game_count=st.game_counter,
            house_balance=st.house_balance,
            held_funds=st.held_funds,
            total_volume=st.total_volume,
            chain_head=st.chain_head,
            treasury_len=len(st.treasury),
            players=MappingProxyType(dict(st.players)),
        )

    def _publish(self) -> None:
        self._view = self._build_view()
        self._export_gauges()

    def _export_gauges(self) -> None:
        _HOUSE.set(self._view.house_balance)
        _HELD.set(self._view.held_funds)

    def _pay(self, to: str, amount: int, *, op: str) -> None:
        """Outbound transfer; any failure surfaces as TransferError."""
        try:
            ok = self._gateway.transfer(to, amount)
        except TransferError:
            _TRANSFER_FAIL.labels(op).inc()
            raise
        except Exception as e:
            _TRANSFER_FAIL.labels(op).inc()
            raise TransferError(f"transfer of {amount} to {to!r} failed: {e}") from e
        if not ok:
            _TRANSFER_FAIL.labels(op).inc()
            raise TransferError(f"transfer of {amount} to {to!r} was refused")

    # ----- validation -----

    def _validate_bet(self, player: Any, stake: Any, prediction: Any) -> None:
        s = self.settings
        if not isinstance(player, str) or not player.strip():
            raise ValidationError("player must be a non-empty string", reason="player")
        if len(player) > _MAX_PLAYER_LEN:
            raise ValidationError(
                f"player must be at most {_MAX_PLAYER_LEN} characters", reason="player"
            )
        if not _is_utf8(player):
            raise ValidationError("player must be valid UTF-8 text", reason="player")
        if isinstance(stake, bool) or not isinstance(stake, int):
            raise ValidationError("stake must be an integer amount of base units", reason="stake_type")
        if stake < s.min_stake:
            raise ValidationError(
                f"stake {stake} below minimum {s.min_stake}", reason="stake_below_min"
            )
        if stake > s.max_stake:
            raise ValidationError(
                f"stake {stake} above maximum {s.max_stake}", reason="stake_above_max"
            )
        if isinstance(prediction, bool) or not isinstance(prediction, int) or not 1 <= prediction <= FACES:
            raise ValidationError(
                f"prediction must be an integer in 1..{FACES}", reason="prediction"
            )

    @staticmethod
    def _validate_amount(amount: Any) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer", reason="amount")

    # ----- bet resolution -----

    def payout_for(self, stake: int) -> int:
        s = self.settings
        return stake * s.payout_multiplier * (100 - s.house_edge_pct) // 100

    def resolve_bet(self, player: str, stake: int, prediction: int) -> Receipt:
        """
        Validate, draw once, settle and record one bet.

        Solvency is checked against held funds before the new stake is
        credited, using the worst-case payout for the stake.
        """
        try:
            self._validate_bet(player, stake, prediction)
        except ValidationError as e:
            _BET_REJECTED.labels(e.reason).inc()
            raise

        with self._mutation("resolve_bet") as st:
            required = self.settings.max_payout(stake)
            if st.held_funds < required:
                _BET_REJECTED.labels("solvency").inc()
                raise SolvencyError(
                    f"held funds {st.held_funds} cannot cover worst-case payout {required}"
                )

            cp = self._checkpoint(player)
            try:
                receipt = self._apply_bet(st, player, stake, prediction)
                if receipt.won:
                    self._pay(player, receipt.payout, op="resolve_bet")
            except BaseException:
                self._rollback(cp)
                raise

            self._publish()
            g = receipt.game
            _BETS.labels("win" if g.won else "loss").inc()
            self.events.publish(
                GameResolved(
                    id=g.id,
                    player=g.player,
                    stake=g.stake,
                    prediction=g.prediction,
                    outcome=g.outcome,
                    won=g.won,
                    payout=g.payout,
                )
            )

        logger.info(
            "bet.resolved",
            extra={
                "game_id": g.id,
                "player": g.player,
                "stake": g.stake,
                "prediction": g.prediction,
                "outcome": g.outcome,
                "won": g.won,
                "payout": g.payout,
            },
        )
        return receipt

    def _apply_bet(self, st: LedgerState, player: str, stake: int, prediction: int) -> Receipt:
        st.game_counter += 1
        gid = st.game_counter

        now = self._clock()
        ctx = DrawContext(
            timestamp=int(now),
            entropy=st.chain_head or self.settings.entropy_seed,
            player=player,
            nonce=gid,
        )
        outcome = outcome_from_draw(self._randomness.draw(ctx))
        won = outcome == prediction

        rec = st.players.get(player, PlayerRecord())
        st.held_funds += stake
        if won:
            payout = self.payout_for(stake)
            st.held_funds -= payout
            st.players[player] = replace(rec, wins=rec.wins + 1)
        else:
            payout = 0
            st.house_balance += stake
            st.players[player] = replace(rec, losses=rec.losses + 1)

        game = Game(
            id=gid,
            player=player,
            stake=stake,
            prediction=prediction,
            outcome=outcome,
            won=won,
            payout=payout,
            timestamp=float(now),
        )
        prev = st.chain_head
        head = game_receipt_hash(game=game.as_dict(), prev=prev)
        st.history[gid] = game
        st.heads[gid] = head
        st.chain_head = head
        st.total_volume += stake
        return Receipt(game_id=gid, game=game, head=head, prev=prev)

    # ----- treasury primitives (authorization is TreasuryControl's job) -----

    def _credit_house(self, amount: int, *, actor: str, kind: str) -> int:
        self._validate_amount(amount)
        with self._mutation(kind) as st:
            st.house_balance += amount
            st.held_funds += amount
            st.treasury.append(TreasuryEntry(kind, actor, amount, self._clock()))
            self._publish()
            _TREASURY_OPS.labels(kind).inc()
            new_balance = st.house_balance
            self.events.publish(HouseBalanceChanged(new_balance=new_balance))
        logger.info("treasury.%s", kind, extra={"actor": actor, "amount": amount})
        return new_balance

    def _debit_house(self, amount: int, *, actor: str) -> int:
        self._validate_amount(amount)
        with self._mutation("withdraw") as st:
            if amount > st.house_balance:
                raise SolvencyError(
                    f"withdrawal {amount} exceeds house balance {st.house_balance}",
                    reason="house_balance",
                )
            if amount > st.held_funds:
                raise SolvencyError(
                    f"withdrawal {amount} exceeds held funds {st.held_funds}",
                    reason="held_funds",
                )
            cp = self._checkpoint()
            try:
                st.house_balance -= amount
                st.held_funds -= amount
                st.treasury.append(TreasuryEntry("withdraw", actor, amount, self._clock()))
                self._pay(actor, amount, op="withdraw")
            except BaseException:
                self._rollback(cp)
                raise
            self._publish()
            _TREASURY_OPS.labels("withdraw").inc()
            new_balance = st.house_balance
            self.events.publish(
                FundsWithdrawn(actor=actor, amount=amount),
                HouseBalanceChanged(new_balance=new_balance),
            )
        logger.info("treasury.withdraw", extra={"actor": actor, "amount": amount})
        return new_balance

    # ----- reads (committed view only) -----

    def view(self) -> LedgerView:
        return self._view

    @property
    def next_game_id(self) -> int:
        return self._view.next_game_id

    def game(self, game_id: int) -> Game:
        view = self._view
        if isinstance(game_id, bool) or not isinstance(game_id, int):
            raise NotFoundError(f"game id must be an integer, got {game_id!r}")
        if not 1 <= game_id <= view.game_count:
            raise NotFoundError(f"game {game_id} not found (valid ids 1..{view.game_count})")
        return self._state.history[game_id]

    def receipt(self, game_id: int) -> Receipt:
        game = self.game(game_id)
        heads = self._state.heads
        return Receipt(
            game_id=game_id,
            game=game,
            head=heads[game_id],
            prev=heads.get(game_id - 1),
        )

    def games(
        self,
        *,
        offset: int = 0,
        limit: int = 100,
        player: Optional[str] = None,
        newest_first: bool = False,
    ) -> List[Game]:
        """Page through committed games in id order (or reverse)."""
        count = self._view.game_count
        history = self._state.history
        ids = range(count, 0, -1) if newest_first else range(1, count + 1)
        out: List[Game] = []
        skipped = 0
        for gid in ids:
            g = history[gid]
            if player is not None and g.player != player:
                continue
            if skipped < offset:
                skipped += 1
                continue
            if len(out) >= max(0, int(limit)):
                break
            out.append(g)
        return out

    def export_games(self, *, player: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Yield committed games with their receipt heads (JSONL-friendly)."""
        count = self._view.game_count
        for gid in range(1, count + 1):
            g = self._state.history[gid]
            if player is not None and g.player != player:
                continue
            row = g.as_dict()
            row["head"] = self._state.heads.get(gid)
            yield row

    # ----- audit helpers -----

    def audit(self) -> Dict[str, Any]:
        """
        Replay committed games and treasury entries since construction and
        compare the recomputed balances against the recorded ones.
        """
        view = self._view
        st = self._state
        base = self._baseline

        house = base.house_balance
        held = base.held_funds
        volume = base.total_volume
        for gid in range(base.game_counter + 1, view.game_count + 1):
            g = st.history[gid]
            volume += g.stake
            held += g.stake - g.payout
            if not g.won:
                house += g.stake
        for entry in st.treasury[base.treasury_len:view.treasury_len]:
            sign = -1 if entry.kind == "withdraw" else 1
            house += sign * entry.amount
            held += sign * entry.amount

        counts: Dict[str, int] = {}
        for gid in range(1, view.game_count + 1):
            p = st.history[gid].player
            counts[p] = counts.get(p, 0) + 1
        players_ok = counts == {p: r.total_games for p, r in view.players.items() if r.total_games}

        def _cmp(expected: int, recorded: int) -> Dict[str, int]:
            return {"expected": expected, "recorded": recorded, "delta": expected - recorded}

        return {
            "games": view.game_count,
            "house_balance": _cmp(house, view.house_balance),
            "held_funds": _cmp(held, view.held_funds),
            "total_volume": _cmp(volume, view.total_volume),
            "players_consistent": players_ok,
        }

    def verify_chain(self) -> Dict[str, Any]:
        """Recompute every receipt head; report the first broken link if any."""
        view = self._view
        st = self._state
        prev: Optional[str] = None
        for gid in range(1, view.game_count + 1):
            game = st.history.get(gid)
            head = st.heads.get(gid)
            if game is None or head is None:
                return {"ok": False, "checked": gid - 1, "first_bad": gid}
            if game_receipt_hash(game=game.as_dict(), prev=prev) != head:
                return {"ok": False, "checked": gid - 1, "first_bad": gid}
            prev = head
        return {"ok": True, "checked": view.game_count, "first_bad": None}
