# dicehouse/tests/test_ledger.py
import pytest

from dicehouse.config import UNIT, Settings
from dicehouse.ledger import (
    Ledger,
    LedgerState,
    NotFoundError,
    SolvencyError,
    TransferError,
    ValidationError,
)
from dicehouse.randomness import HashRandomnessSource, ScriptedRandomnessSource
from dicehouse.transfer import PayoutBook, TransferGateway

STAKE = UNIT // 100
T0 = 1_700_000_000.0


def _ledger(outcomes, *, house=10 * UNIT, gateway=None, state=None):
    return Ledger(
        Settings(initial_house_balance=house),
        state=state,
        randomness=ScriptedRandomnessSource(outcomes),
        gateway=gateway or PayoutBook(),
        clock=lambda: T0,
    )


class _ExplodingGateway(TransferGateway):
    def transfer(self, to, amount):
        raise RuntimeError("rail down")


def test_winning_bet_pays_net_of_edge_and_keeps_house_balance():
    book = PayoutBook()
    ledger = _ledger([3], gateway=book)

    r = ledger.resolve_bet("alice", STAKE, 3)

    assert r.game_id == 1
    assert r.won and r.outcome == 3
    assert r.payout == 49 * 10**15
    v = ledger.view()
    assert v.house_balance == 10 * UNIT
    assert v.held_funds == 10 * UNIT + STAKE - 49 * 10**15
    assert v.total_volume == STAKE
    assert v.players["alice"].wins == 1
    assert book.balance_of("alice") == 49 * 10**15
    assert ledger.next_game_id == 2


def test_losing_bet_credits_house():
    book = PayoutBook()
    ledger = _ledger([5], gateway=book)

    r = ledger.resolve_bet("alice", STAKE, 3)

    assert not r.won and r.outcome == 5 and r.payout == 0
    v = ledger.view()
    assert v.house_balance == 10 * UNIT + STAKE
    assert v.held_funds == 10 * UNIT + STAKE
    assert v.players["alice"].losses == 1
    assert book.transfers() == []


@pytest.mark.parametrize(
    "player,stake,prediction,reason",
    [
        ("alice", 2 * UNIT, 3, "stake_above_max"),
        ("alice", STAKE - 1, 3, "stake_below_min"),
        ("alice", True, 3, "stake_type"),
        ("alice", STAKE, 0, "prediction"),
        ("alice", STAKE, 7, "prediction"),
        ("", STAKE, 3, "player"),
        ("x" * 300, STAKE, 3, "player"),
        ("alice\ud800", STAKE, 3, "player"),
    ],
)
def test_invalid_bets_are_rejected_without_touching_state(player, stake, prediction, reason):
    ledger = _ledger([3])
    before = ledger.view()

    with pytest.raises(ValidationError) as ei:
        ledger.resolve_bet(player, stake, prediction)

    assert ei.value.reason == reason
    assert ledger.view() == before
    assert ledger.next_game_id == 1


def test_bounds_are_inclusive():
    ledger = _ledger([1, 1])
    assert ledger.resolve_bet("alice", STAKE, 2).game_id == 1
    assert ledger.resolve_bet("alice", UNIT, 2).game_id == 2


def test_solvency_is_checked_against_worst_case_payout():
    # 5 * stake needed; one base unit short
    ledger = _ledger([3], house=5 * STAKE - 1)

    with pytest.raises(SolvencyError):
        ledger.resolve_bet("alice", STAKE, 3)
    assert ledger.next_game_id == 1

    ok = _ledger([3], house=5 * STAKE)
    assert ok.resolve_bet("alice", STAKE, 3).won


def test_empty_house_rejects_every_bet():
    ledger = _ledger([3], house=0)
    with pytest.raises(SolvencyError):
        ledger.resolve_bet("alice", STAKE, 3)


def test_refused_payout_rolls_everything_back():
    book = PayoutBook()
    book.pause()
    ledger = _ledger([3, 3], gateway=book)
    before = ledger.view()

    with pytest.raises(TransferError):
        ledger.resolve_bet("alice", STAKE, 3)

    assert ledger.view() == before
    assert ledger.next_game_id == 1
    assert "alice" not in ledger.view().players
    with pytest.raises(NotFoundError):
        ledger.game(1)

    book.resume()
    r = ledger.resolve_bet("alice", STAKE, 3)
    assert r.game_id == 1
    assert r.prev is None


def test_raising_gateway_is_wrapped_and_rolled_back():
    ledger = _ledger([3], gateway=_ExplodingGateway())

    with pytest.raises(TransferError) as ei:
        ledger.resolve_bet("alice", STAKE, 3)

    assert isinstance(ei.value.__cause__, RuntimeError)
    assert ledger.view().game_count == 0
    assert ledger.view().held_funds == 10 * UNIT


def test_losses_never_touch_the_gateway():
    ledger = _ledger([4], gateway=_ExplodingGateway())
    r = ledger.resolve_bet("alice", STAKE, 3)
    assert not r.won


def test_exhausted_randomness_propagates_and_rolls_back():
    ledger = _ledger([2])
    ledger.resolve_bet("alice", STAKE, 3)

    with pytest.raises(LookupError):
        ledger.resolve_bet("alice", STAKE, 3)
    assert ledger.next_game_id == 2
    assert ledger.view().players["alice"].total_games == 1


def test_ids_are_sequential_and_receipts_chain():
    ledger = _ledger([1, 2, 3, 4])
    receipts = [ledger.resolve_bet("p%d" % i, STAKE, 3) for i in range(4)]

    assert [r.game_id for r in receipts] == [1, 2, 3, 4]
    assert receipts[0].prev is None
    for a, b in zip(receipts, receipts[1:]):
        assert b.prev == a.head
    assert ledger.view().chain_head == receipts[-1].head
    assert ledger.receipt(2) == receipts[1]


def test_draw_context_uses_chain_head_as_entropy():
    rnd = ScriptedRandomnessSource([1, 2])
    ledger = Ledger(Settings(initial_house_balance=UNIT), randomness=rnd, clock=lambda: T0)

    first = ledger.resolve_bet("alice", STAKE, 3)
    ledger.resolve_bet("bob", STAKE, 3)

    c1, c2 = rnd.contexts
    assert c1.entropy == ledger.settings.entropy_seed
    assert c1.nonce == 1 and c1.player == "alice" and c1.timestamp == int(T0)
    assert c2.entropy == first.head
    assert c2.nonce == 2


def test_hash_randomness_is_deterministic_for_fixed_inputs():
    def run():
        ledger = Ledger(
            Settings(initial_house_balance=10 * UNIT),
            randomness=HashRandomnessSource(),
            clock=lambda: T0,
        )
        return [ledger.resolve_bet("alice", STAKE, 1 + i % 6) for i in range(10)]

    a, b = run(), run()
    assert [r.outcome for r in a] == [r.outcome for r in b]
    assert [r.head for r in a] == [r.head for r in b]
    assert all(1 <= r.outcome <= 6 for r in a)


def test_games_paging_and_player_filter():
    ledger = _ledger([1, 2, 3, 4, 5])
    for i in range(5):
        ledger.resolve_bet("alice" if i % 2 == 0 else "bob", STAKE, 6)

    assert [g.id for g in ledger.games(offset=1, limit=2)] == [2, 3]
    assert [g.id for g in ledger.games(player="alice")] == [1, 3, 5]
    assert [g.id for g in ledger.games(newest_first=True, limit=2)] == [5, 4]
    assert ledger.games(offset=10) == []


def test_game_lookup_bounds():
    ledger = _ledger([1])
    ledger.resolve_bet("alice", STAKE, 3)

    assert ledger.game(1).player == "alice"
    for bad in (0, 2, -1, "1"):
        with pytest.raises(NotFoundError):
            ledger.game(bad)


def test_export_games_yields_rows_with_heads():
    ledger = _ledger([3, 1])
    ledger.resolve_bet("alice", STAKE, 3)
    ledger.resolve_bet("bob", STAKE, 3)

    rows = list(ledger.export_games())
    assert [r["id"] for r in rows] == [1, 2]
    assert rows[1]["head"] == ledger.view().chain_head
    assert [r["player"] for r in ledger.export_games(player="bob")] == ["bob"]


def test_injected_state_is_used_and_validated():
    state = LedgerState(house_balance=UNIT, held_funds=UNIT)
    ledger = _ledger([3], state=state)
    ledger.resolve_bet("alice", STAKE, 2)
    assert state.house_balance == UNIT + STAKE
    assert state.next_game_id == 2

    with pytest.raises(ValidationError):
        _ledger([3], state=LedgerState(held_funds=-1))
