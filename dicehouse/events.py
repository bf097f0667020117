# dicehouse/events.py
from __future__ import annotations

import collections
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GameResolved:
    id: int
    player: str
    stake: int
    prediction: int
    outcome: int
    won: bool
    payout: int

    kind = "game_resolved"


@dataclass(frozen=True)
class HouseBalanceChanged:
    new_balance: int

    kind = "house_balance_changed"


@dataclass(frozen=True)
class FundsWithdrawn:
    actor: str
    amount: int

    kind = "funds_withdrawn"


def event_to_dict(event: Any) -> Dict[str, Any]:
    d = asdict(event)
    d["kind"] = event.kind
    return d


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class EventSink:
    """Hook for external observers/indexers of ledger state transitions."""

    def emit(self, event: Any) -> None:
        raise NotImplementedError


class MemoryEventSink(EventSink):
    """Bounded buffer of the most recent events, newest last."""

    def __init__(self, maxlen: int = 1024):
        self._buf: Deque[Any] = collections.deque(maxlen=max(1, int(maxlen)))
        self._lock = threading.Lock()

    def emit(self, event: Any) -> None:
        with self._lock:
            self._buf.append(event)

    def recent(self, limit: Optional[int] = None) -> List[Any]:
        with self._lock:
            items = list(self._buf)
        if limit is not None and limit >= 0:
            return items[-limit:] if limit else []
        return items


class EventBus:
    """
    Fan-out of ledger events to registered sinks.

    Events are published only after the owning transaction committed. A sink
    that raises is logged and skipped; it never affects ledger state.
    """

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self._sinks: List[EventSink] = list(sinks or [])
        self._lock = threading.Lock()

    def subscribe(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def publish(self, *events: Any) -> None:
        with self._lock:
            sinks = list(self._sinks)
        for event in events:
            for sink in sinks:
                try:
                    sink.emit(event)
                except Exception:
                    logger.exception("EventSink.emit failed for %s", event.kind)
