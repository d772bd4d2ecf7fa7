"""Engine-owned mutable state, safe to read from status reporters."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum

from .outcome import SettlementOutcome


class EnginePhase(str, Enum):
    IDLE = "idle"
    CHECKING_BALANCE = "checking-balance"
    EVALUATING_SIGNALS = "evaluating-signals"
    TRANSFERRING = "transferring"
    RECORDING_RESULT = "recording-result"


@dataclass(frozen=True)
class ExecutionCounters:
    """Cumulative counters; never decrease for the life of the process."""

    signals_checked: int = 0
    realized_wei: int = 0
    ticks_completed: int = 0
    ticks_skipped: int = 0


@dataclass(frozen=True)
class StateSnapshot:
    phase: EnginePhase
    counters: ExecutionCounters
    last_outcome: SettlementOutcome | None
    last_outcome_at: datetime | None
    last_balance_wei: int | None
    last_balance_at: datetime | None


class SettlementState:
    """Counters, phase and last outcome for one settlement engine.

    Only the engine writes; any thread may call ``snapshot()``. The last
    outcome is replaced once per completed tick, so readers never see a
    half-finished tick.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._phase = EnginePhase.IDLE
        self._counters = ExecutionCounters()
        self._last_outcome: SettlementOutcome | None = None
        self._last_outcome_at: datetime | None = None
        self._last_balance_wei: int | None = None
        self._last_balance_at: datetime | None = None

    @property
    def phase(self) -> EnginePhase:
        return self._phase

    def set_phase(self, phase: EnginePhase) -> None:
        with self._lock:
            self._phase = phase

    def add_signals_checked(self, count: int) -> None:
        if count < 0:
            raise ValueError(f"signal count must be non-negative (got {count})")
        with self._lock:
            self._counters = replace(
                self._counters,
                signals_checked=self._counters.signals_checked + count,
            )

    def add_realized(self, amount_wei: int) -> None:
        if amount_wei < 0:
            raise ValueError(f"realized value must be non-negative (got {amount_wei})")
        with self._lock:
            self._counters = replace(
                self._counters, realized_wei=self._counters.realized_wei + amount_wei
            )

    def observe_balance(self, balance_wei: int) -> None:
        with self._lock:
            self._last_balance_wei = balance_wei
            self._last_balance_at = datetime.now(timezone.utc)

    def record_outcome(self, outcome: SettlementOutcome) -> None:
        with self._lock:
            self._last_outcome = outcome
            self._last_outcome_at = outcome.finished_at or datetime.now(timezone.utc)
            self._counters = replace(
                self._counters, ticks_completed=self._counters.ticks_completed + 1
            )

    def record_skip(self) -> None:
        with self._lock:
            self._counters = replace(
                self._counters, ticks_skipped=self._counters.ticks_skipped + 1
            )

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(
                phase=self._phase,
                counters=self._counters,
                last_outcome=self._last_outcome,
                last_outcome_at=self._last_outcome_at,
                last_balance_wei=self._last_balance_wei,
                last_balance_at=self._last_balance_at,
            )
