# dicehouse/config.py
from __future__ import annotations

import logging
import os
from typing import Any, Dict, FrozenSet, Optional

import yaml
from pydantic import BaseModel, field_validator, model_validator

from .kv import canonical_kv_hash


_log = logging.getLogger(__name__)

UNIT = 10**18


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path is empty or missing.
      - Only accept dict at top-level.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    return {str(k): v for k, v in doc.items()}


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseModel):
    # --- Core / identity --------------------------------------------------

    debug: bool = False
    version: str = "dev"
    app_name: str = "dicehouse"

    # Indicates how this config reached the process (defaults/yaml/env).
    config_origin: str = "defaults"

    # --- Game economics ---------------------------------------------------

    # Base units per display unit.
    unit: int = UNIT
    min_stake: int = UNIT // 100
    max_stake: int = UNIT
    house_edge_pct: int = 2
    payout_multiplier: int = 5

    # Genesis entropy mixed into the first draw.
    entropy_seed: str = "dicehouse-genesis"
    # House funds present at start-up, before any deposit.
    initial_house_balance: int = 0

    # --- Treasury ---------------------------------------------------------

    # Comma-separated actors allowed to deposit/withdraw house funds.
    treasury_actors: str = "owner"

    # --- Observability ----------------------------------------------------

    event_buffer_size: int = 1024
    log_level: str = "INFO"

    class Config:
        extra = "forbid"
        frozen = True

    @field_validator("unit", "min_stake", "max_stake", "payout_multiplier")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("house_edge_pct")
    @classmethod
    def _edge_range(cls, v: int) -> int:
        if not 0 <= v < 100:
            raise ValueError("house_edge_pct must be in [0, 100)")
        return v

    @field_validator("initial_house_balance", "event_buffer_size")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError("log_level must be one of %s" % ", ".join(_LOG_LEVELS))
        return level

    @model_validator(mode="after")
    def _stake_bounds(self) -> "Settings":
        if self.min_stake > self.max_stake:
            raise ValueError("min_stake must not exceed max_stake")
        return self

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    def treasury_actor_set(self) -> FrozenSet[str]:
        return frozenset(a.strip() for a in self.treasury_actors.split(",") if a.strip())

    def max_payout(self, stake: int) -> int:
        """Worst-case payout obligation the ledger must cover for `stake`."""
        return stake * self.payout_multiplier

    def config_hash(self) -> str:
        """Stable hash of the current settings, safe to expose."""
        return canonical_kv_hash(
            self.model_dump(mode="json"),
            ctx="dicehouse:settings",
            label="settings",
        )


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def _with_env(origin: str) -> str:
    if origin == "defaults":
        return "env"
    return origin if origin.endswith("env") else origin + "+env"


def _load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by DICE_CONFIG_PATH.
      3. Environment variables (DICE_*), with bounds.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    yaml_path = os.environ.get("DICE_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # extra="forbid" rejects typos
        origin = "yaml"

    def _env_override(name: str, key: str, parser, lo: Optional[int] = None) -> None:
        nonlocal origin
        if os.environ.get(name) in (None, ""):
            return
        new = parser(name, merged[key])
        if lo is not None and new < lo:
            _log.warning("ignoring out-of-range %s=%r", name, new)
            return
        merged[key] = new
        origin = _with_env(origin)

    _env_override("DICE_DEBUG", "debug", _env_bool)
    _env_override("DICE_MIN_STAKE", "min_stake", _env_int, lo=1)
    _env_override("DICE_MAX_STAKE", "max_stake", _env_int, lo=1)
    _env_override("DICE_HOUSE_EDGE_PCT", "house_edge_pct", _env_int, lo=0)
    _env_override("DICE_PAYOUT_MULTIPLIER", "payout_multiplier", _env_int, lo=1)
    _env_override("DICE_INITIAL_HOUSE_BALANCE", "initial_house_balance", _env_int, lo=0)
    _env_override("DICE_EVENT_BUFFER_SIZE", "event_buffer_size", _env_int, lo=0)

    for name, key in (
        ("DICE_VERSION", "version"),
        ("DICE_ENTROPY_SEED", "entropy_seed"),
        ("DICE_TREASURY_ACTORS", "treasury_actors"),
        ("DICE_LOG_LEVEL", "log_level"),
    ):
        raw = os.environ.get(name)
        if raw:
            merged[key] = raw.strip()
            origin = _with_env(origin)

    merged["config_origin"] = origin
    return Settings(**merged)


def load_settings() -> Settings:
    return _load_settings()
