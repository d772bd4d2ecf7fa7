"""Settlement scheduling: engine, owned state and outcomes."""

from __future__ import annotations

from .engine import SettlementEngine
from .outcome import ERROR_STATUSES, OutcomeStatus, SettlementOutcome
from .state import EnginePhase, ExecutionCounters, SettlementState, StateSnapshot

__all__ = [
    "ERROR_STATUSES",
    "EnginePhase",
    "ExecutionCounters",
    "OutcomeStatus",
    "SettlementEngine",
    "SettlementOutcome",
    "SettlementState",
    "StateSnapshot",
]
