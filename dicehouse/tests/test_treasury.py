# dicehouse/tests/test_treasury.py
import pytest

from dicehouse.auth import AuthContext, Authorizer, PLAYER_SCOPE, TREASURY_SCOPE
from dicehouse.config import UNIT, Settings
from dicehouse.events import FundsWithdrawn, HouseBalanceChanged, MemoryEventSink
from dicehouse.ledger import (
    AuthorizationError,
    Ledger,
    SolvencyError,
    TransferError,
    ValidationError,
)
from dicehouse.randomness import ScriptedRandomnessSource
from dicehouse.transfer import PayoutBook
from dicehouse.treasury import TreasuryControl

STAKE = UNIT // 100

OWNER = Authorizer(["owner"]).context_for("owner")
STRANGER = Authorizer(["owner"]).context_for("mallory")


def _setup(outcomes=(3,), house=0):
    book = PayoutBook()
    sink = MemoryEventSink()
    ledger = Ledger(
        Settings(initial_house_balance=house),
        randomness=ScriptedRandomnessSource(outcomes, cycle=True),
        gateway=book,
    )
    ledger.events.subscribe(sink)
    return ledger, TreasuryControl(ledger), book, sink


def test_authorizer_grants_scopes():
    assert OWNER.has_scope(TREASURY_SCOPE) and OWNER.privileged
    assert STRANGER.scopes == (PLAYER_SCOPE,)
    assert not STRANGER.privileged


def test_deposit_credits_house_and_held_funds():
    ledger, treasury, _, sink = _setup()

    assert treasury.deposit(3 * UNIT, OWNER) == 3 * UNIT

    v = ledger.view()
    assert v.house_balance == 3 * UNIT
    assert v.held_funds == 3 * UNIT
    assert sink.recent() == [HouseBalanceChanged(new_balance=3 * UNIT)]


@pytest.mark.parametrize("auth", [STRANGER, AuthContext(principal="owner"), None])
def test_unauthorized_calls_change_nothing(auth):
    ledger, treasury, book, sink = _setup(house=UNIT)
    before = ledger.view()

    with pytest.raises(AuthorizationError):
        treasury.deposit(UNIT, auth)
    with pytest.raises(AuthorizationError):
        treasury.withdraw(UNIT, auth)

    assert ledger.view() == before
    assert book.transfers() == []
    assert sink.recent() == []


def test_withdraw_exact_house_balance_succeeds_one_more_fails():
    ledger, treasury, book, sink = _setup(house=2 * UNIT)

    with pytest.raises(SolvencyError):
        treasury.withdraw(2 * UNIT + 1, OWNER)
    assert ledger.view().house_balance == 2 * UNIT

    assert treasury.withdraw(2 * UNIT, OWNER) == 0
    assert book.balance_of("owner") == 2 * UNIT
    assert ledger.view().held_funds == 0
    assert sink.recent() == [
        FundsWithdrawn(actor="owner", amount=2 * UNIT),
        HouseBalanceChanged(new_balance=0),
    ]


def test_withdraw_is_capped_by_held_funds_after_wins():
    # house 10 * STAKE; a win leaves house_balance untouched but drains held funds
    ledger, treasury, _, _ = _setup(outcomes=(3,), house=10 * STAKE)
    r = ledger.resolve_bet("alice", STAKE, 3)
    assert r.won

    v = ledger.view()
    assert v.house_balance == 10 * STAKE
    assert v.held_funds == 11 * STAKE - r.payout
    assert v.held_funds < v.house_balance

    with pytest.raises(SolvencyError) as ei:
        treasury.withdraw(v.house_balance, OWNER)
    assert ei.value.reason == "held_funds"

    treasury.withdraw(v.held_funds, OWNER)
    assert ledger.view().held_funds == 0


def test_failed_withdraw_transfer_rolls_back():
    ledger, treasury, book, sink = _setup(house=UNIT)
    book.pause()
    before = ledger.view()

    with pytest.raises(TransferError):
        treasury.withdraw(UNIT // 2, OWNER)

    assert ledger.view() == before
    assert sink.recent() == []
    assert ledger.audit()["house_balance"]["delta"] == 0


@pytest.mark.parametrize("amount", [0, -1, True, 1.5, "10"])
def test_amounts_must_be_positive_integers(amount):
    ledger, treasury, _, _ = _setup(house=UNIT)
    with pytest.raises(ValidationError):
        treasury.deposit(amount, OWNER)
    with pytest.raises(ValidationError):
        treasury.receive_unsolicited_funds(amount, "anyone")


def test_unsolicited_funds_are_unprivileged():
    ledger, treasury, _, sink = _setup()

    assert treasury.receive_unsolicited_funds(5 * STAKE, "stranger") == 5 * STAKE
    assert ledger.view().held_funds == 5 * STAKE
    assert sink.recent()[-1] == HouseBalanceChanged(new_balance=5 * STAKE)

    with pytest.raises(ValidationError):
        treasury.receive_unsolicited_funds(STAKE, "")
    with pytest.raises(ValidationError) as ei:
        treasury.receive_unsolicited_funds(STAKE, "donor\udc80")
    assert ei.value.reason == "sender"
    assert ledger.view().held_funds == 5 * STAKE

    # the new funds back a bet
    assert ledger.resolve_bet("alice", STAKE, 1).game_id == 1
