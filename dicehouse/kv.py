# FILE: dicehouse/kv.py
from __future__ import annotations

"""
Helpers for stable key/value hashing and deterministic IDs.

This module is used to build:
  - receipt heads for the game history chain;
  - the integer digest behind the default randomness source;
  - the settings hash embedded in health responses.

Key properties:
  - Deterministic, canonical encoding of basic Python types;
  - Streaming hasher with optional HMAC-style secret key;
  - Explicit domain separation via labels and context strings.
"""

import hashlib
import hmac
import json
import os
from typing import Any, Mapping, Optional


# ---- Digest algorithm controls ----


def _resolve_digest(alg: str):
    """
    Map a requested algorithm name to a hashlib constructor.

    Only a small set of modern digests is accepted; anything else is a
    programming error and raises.
    """
    name = (alg or "").lower()
    if name in ("sha256", "sha-256", ""):
        return hashlib.sha256
    if name in ("blake2s", "b2s"):
        return hashlib.blake2s
    raise ValueError(f"Unsupported digest algorithm for kv hashing: {alg!r}")


# Rough guard for total size of KV material before hashing (in bytes).
_KV_MAX_APPROX_BYTES = int(os.environ.get("DICE_KV_MAX_BYTES", "4096"))


def _normalize_key(key: Optional[bytes]) -> Optional[bytes]:
    """
    Normalize and validate an HMAC key (bytes, at least 16 long).
    """
    if key is None:
        return None
    if not isinstance(key, (bytes, bytearray)):
        raise TypeError("HMAC key must be bytes or bytearray")
    if len(key) < 16:
        raise ValueError("HMAC key too short; expected at least 16 bytes")
    return bytes(key)


class RollingHasher:
    """
    Streaming hasher for building stable digests over simple structures.

    Features:
      - Fixed digest algorithm (default SHA-256) chosen by a symbolic `alg`;
      - Optional HMAC-style secret key;
      - Domain separation via an explicit `label` and user-provided `ctx`;
      - Helpers for bytes, strings, and JSON-compatible values.
    """

    def __init__(
        self,
        alg: str = "sha256",
        ctx: str = "",
        *,
        key: Optional[bytes] = None,
        label: str = "",
    ):
        digestmod = _resolve_digest(alg)
        self._alg = alg

        if key is not None:
            key = _normalize_key(key)
            self._h = hmac.new(key, digestmod=digestmod)
        else:
            self._h = digestmod()

        if label:
            self._h.update(b"kv.label:")
            self._h.update(label.encode("utf-8", errors="surrogatepass"))
            self._h.update(b"\x00")

        if ctx:
            self._h.update(ctx.encode("utf-8", errors="surrogatepass"))


    def update_bytes(self, data: bytes) -> None:
        if not data:
            return
        self._h.update(data)

    def update_str(self, value: str) -> None:
        if not value:
            return
        self._h.update(value.encode("utf-8", errors="surrogatepass"))

    def update_json(self, obj: Any) -> None:
        """
        Update the hasher with a canonical JSON encoding of the given object
        (sorted keys, compact separators).
        """
        payload = json.dumps(
            obj,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        self._h.update(payload.encode("utf-8", errors="surrogatepass"))

    def hex(self) -> str:
        """
        Return the hex digest of the current hash state.

        Calling this does NOT reset the internal state.
        """
        return self._h.hexdigest()


def _feed_scalar(h: RollingHasher, value: Any) -> None:
    """
    Feed a scalar into the hasher in a stable, typed way.

    Scalars are encoded as a small type tag followed by a canonical string
    to avoid ambiguity between, for example, "True" and "1".
    """
    if value is None:
        h.update_bytes(b"t:none;")
        return

    if isinstance(value, bool):
        h.update_bytes(b"t:bool;")
        h.update_bytes(b"1" if value else b"0")
        h.update_bytes(b";")
        return

    if isinstance(value, int):
        h.update_bytes(b"t:int;")
        h.update_str(str(int(value)))
        h.update_bytes(b";")
        return

    if isinstance(value, float):
        v = float(value)
        if v != v or v in (float("inf"), float("-inf")):
            raise ValueError("NaN or infinite values are not allowed in kv hashing")
        h.update_bytes(b"t:float;")
        h.update_str(repr(v))
        h.update_bytes(b";")
        return

    if isinstance(value, str):
        h.update_bytes(b"t:str;")
        h.update_str(value)
        h.update_bytes(b";")
        return

    h.update_bytes(b"t:json;")
    h.update_json(value)
    h.update_bytes(b";")


def canonical_kv_hash(
    mapping: Mapping[str, Any],
    *,
    ctx: str = "",
    label: str = "kv",
    key: Optional[bytes] = None,
    alg: str = "sha256",
) -> str:
    """
    Compute a canonical hash for a mapping of key/value pairs.

    Rules:
      - Keys are converted to strings and sorted lexicographically.
      - For each key, we feed "k:<key>;v:<typed_value>;" into the hasher.
      - The overall hash is independent of the mapping insertion order.
      - Overly large mappings are rejected; this is for envelopes, not blobs.
    """
    approx = 0
    for k, v in mapping.items():
        approx += len(str(k))
        if isinstance(v, (bytes, str)):
            approx += len(v)
        else:
            approx += len(repr(v))
        if approx > _KV_MAX_APPROX_BYTES:
            raise ValueError("canonical_kv_hash: mapping too large for envelope hashing")

    rh = RollingHasher(alg=alg, ctx=ctx, key=key, label=label)
    for k in sorted(mapping.keys(), key=lambda x: str(x)):
        rh.update_bytes(b"k:")
        rh.update_str(str(k))
        rh.update_bytes(b";v:")
        _feed_scalar(rh, mapping[k])
        rh.update_bytes(b";")
    return rh.hex()


# ---- Standardized envelope helpers ----

def game_receipt_hash(
    *,
    game: Mapping[str, Any],
    prev: Optional[str],
    ctx: str = "dicehouse:game",
    key: Optional[bytes] = None,
) -> str:
    """
    Receipt head for one resolved game, chained to the previous head.

    `game` is the flat field mapping of the game record; `prev` is None only
    for the genesis receipt.
    """
    mapping = dict(game)
    mapping["prev"] = prev
    return canonical_kv_hash(mapping, ctx=ctx, label="receipt_head", key=key)


def draw_digest(
    *,
    timestamp: int,
    entropy: str,
    player: str,
    nonce: int,
    ctx: str = "dicehouse:draw",
    key: Optional[bytes] = None,
) -> int:
    """
    Integer digest of one draw context. Same inputs always give the same value.
    """
    mapping = {
        "timestamp": int(timestamp),
        "entropy": str(entropy),
        "player": str(player),
        "nonce": int(nonce),
    }
    return int(canonical_kv_hash(mapping, ctx=ctx, label="draw", key=key), 16)
