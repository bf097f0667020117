# dicehouse/tests/test_randomness.py
import pytest

from dicehouse.kv import canonical_kv_hash, draw_digest, game_receipt_hash
from dicehouse.randomness import (
    DrawContext,
    HashRandomnessSource,
    ScriptedRandomnessSource,
    outcome_from_draw,
)

CTX = DrawContext(timestamp=1_700_000_000, entropy="seed", player="alice", nonce=1)


def test_outcome_maps_into_die_faces():
    assert [outcome_from_draw(v) for v in range(7)] == [1, 2, 3, 4, 5, 6, 1]
    assert outcome_from_draw(2**256 - 1) in range(1, 7)


def test_scripted_source_replays_faces():
    src = ScriptedRandomnessSource([6, 1])
    assert outcome_from_draw(src.draw(CTX)) == 6
    assert outcome_from_draw(src.draw(CTX)) == 1
    assert src.contexts == [CTX, CTX]
    with pytest.raises(LookupError):
        src.draw(CTX)


def test_scripted_source_cycles():
    src = ScriptedRandomnessSource([2], cycle=True)
    assert {outcome_from_draw(src.draw(CTX)) for _ in range(3)} == {2}


@pytest.mark.parametrize("faces", [[], [0], [7]])
def test_scripted_source_rejects_bad_scripts(faces):
    with pytest.raises(ValueError):
        ScriptedRandomnessSource(faces)


def test_hash_source_depends_on_every_input():
    src = HashRandomnessSource()
    base = src.draw(CTX)
    assert src.draw(CTX) == base
    assert base == draw_digest(timestamp=CTX.timestamp, entropy="seed", player="alice", nonce=1)
    for other in (
        DrawContext(CTX.timestamp + 1, CTX.entropy, CTX.player, CTX.nonce),
        DrawContext(CTX.timestamp, "other", CTX.player, CTX.nonce),
        DrawContext(CTX.timestamp, CTX.entropy, "bob", CTX.nonce),
        DrawContext(CTX.timestamp, CTX.entropy, CTX.player, 2),
    ):
        assert src.draw(other) != base


def test_keyed_hash_source_differs_and_rejects_short_keys():
    keyed = HashRandomnessSource(key=b"k" * 32)
    assert keyed.draw(CTX) != HashRandomnessSource().draw(CTX)
    with pytest.raises(ValueError):
        HashRandomnessSource(key=b"short").draw(CTX)


def test_canonical_hash_ignores_insertion_order():
    a = canonical_kv_hash({"x": 1, "y": "z"}, ctx="t")
    b = canonical_kv_hash({"y": "z", "x": 1}, ctx="t")
    assert a == b
    assert a != canonical_kv_hash({"x": True, "y": "z"}, ctx="t")
    assert a != canonical_kv_hash({"x": 1, "y": "z"}, ctx="other")


def test_receipt_hash_binds_previous_head():
    game = {"id": 1, "player": "alice", "stake": 10, "outcome": 3}
    genesis = game_receipt_hash(game=game, prev=None)
    assert genesis == game_receipt_hash(game=dict(game), prev=None)
    assert genesis != game_receipt_hash(game=game, prev="00" * 32)


def test_oversized_mapping_is_rejected():
    with pytest.raises(ValueError):
        canonical_kv_hash({"blob": "x" * 10_000})


def test_lone_surrogates_are_not_dropped_from_hashes():
    assert canonical_kv_hash({"player": "alice\ud800"}) != canonical_kv_hash({"player": "alice"})
