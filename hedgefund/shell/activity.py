"""Decision Log — bounded audit trail of everything the orchestrator decided.

Central writer for decision records. Keeps the most recent entries in a
FIFO ring and emits a structlog event for each one.
"""

from __future__ import annotations

import copy
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

import structlog

log = structlog.get_logger()

DECISION_LOG_CAPACITY = 100

# --- Entry kinds ---
MARKET_SNAPSHOT = "market_snapshot"
MARKET_ANALYSIS = "market_analysis"
STRATEGY_SCORES = "strategy_scores"
PORTFOLIO_ALLOCATION = "portfolio_allocation"
TRADE_EXECUTION = "trade_execution"
TRADE_FAILED = "trade_failed"
PERFORMANCE_UPDATE = "performance_update"
PERFORMANCE_ANALYSIS = "performance_analysis"
RISK_ADAPTATION = "risk_adaptation"
CYCLE_COMPLETED = "cycle_completed"
CYCLE_FAILURE = "cycle_failure"
CYCLE_INTERRUPTED = "cycle_interrupted"
CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
AGENT_STOPPED = "agent_stopped"


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(_freeze(v) for v in value)
    return copy.deepcopy(value)


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return copy.deepcopy(value)


@dataclass(frozen=True)
class DecisionLogEntry:
    timestamp: datetime
    kind: str
    payload: Mapping[str, Any]

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind,
            "payload": _thaw(self.payload),
        }


class DecisionLog:
    """Append-only ring buffer. The only way an entry leaves is FIFO eviction."""

    def __init__(self, capacity: int = DECISION_LOG_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._entries: deque[DecisionLogEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, kind: str, payload: Mapping[str, Any] | None = None) -> DecisionLogEntry:
        """Append an entry, evicting the oldest when full."""
        entry = DecisionLogEntry(
            timestamp=datetime.now(timezone.utc),
            kind=kind,
            payload=_freeze(payload or {}),
        )
        self._entries.append(entry)
        log.info("decision", kind=kind)
        return entry

    def recent(self, n: int = 5) -> list[DecisionLogEntry]:
        """Return the last n entries in chronological order (most recent last)."""
        if n <= 0:
            return []
        entries = list(self._entries)
        return entries[-n:]

    def of_kind(self, kind: str) -> list[DecisionLogEntry]:
        return [e for e in self._entries if e.kind == kind]
