# dicehouse/randomness.py
from __future__ import annotations

"""
Randomness capability consulted once per bet.

The ledger builds a DrawContext (time, environment entropy, caller, game
counter) and asks its RandomnessSource for one integer; the outcome is
``value % 6 + 1``. HashRandomnessSource hashes the context and is fully
deterministic in its inputs. It is NOT resistant to an adversary who can
choose or predict those inputs; swap in a verifiable source for that.
"""

import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .kv import draw_digest

FACES = 6


@dataclass(frozen=True)
class DrawContext:
    timestamp: int
    entropy: str
    player: str
    nonce: int


class RandomnessSource:
    """Abstract capability: one integer per draw context."""

    def draw(self, ctx: DrawContext) -> int:
        raise NotImplementedError


class HashRandomnessSource(RandomnessSource):
    """
    Hash of the full draw context as a large non-negative integer.

    An optional secret key turns the digest into an HMAC so that outcomes
    cannot be precomputed by anyone who only knows the public inputs.
    """

    def __init__(self, key: Optional[bytes] = None):
        self._key = key

    def draw(self, ctx: DrawContext) -> int:
        return draw_digest(
            timestamp=ctx.timestamp,
            entropy=ctx.entropy,
            player=ctx.player,
            nonce=ctx.nonce,
            key=self._key,
        )


class ScriptedRandomnessSource(RandomnessSource):
    """
    Replays a fixed list of die faces (1..6), one per draw.

    Intended for tests and simulations that need to force outcomes. Raises
    LookupError once the script is exhausted unless `cycle` is set.
    """

    def __init__(self, outcomes: Iterable[int], *, cycle: bool = False):
        faces: List[int] = [int(o) for o in outcomes]
        for face in faces:
            if not 1 <= face <= FACES:
                raise ValueError(f"scripted outcome out of range: {face}")
        if not faces:
            raise ValueError("scripted outcomes must not be empty")
        self._faces = faces
        self._cycle = cycle
        self._pos = 0
        self._lock = threading.Lock()
        self.contexts: List[DrawContext] = []

    def draw(self, ctx: DrawContext) -> int:
        with self._lock:
            if self._pos >= len(self._faces):
                if not self._cycle:
                    raise LookupError("scripted randomness exhausted")
                self._pos = 0
            face = self._faces[self._pos]
            self._pos += 1
            self.contexts.append(ctx)
        return face - 1


def outcome_from_draw(value: int) -> int:
    return int(value) % FACES + 1
