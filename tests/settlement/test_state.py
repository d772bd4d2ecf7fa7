"""Tests for engine-owned state and settlement outcomes."""

import pytest

from treasury_settler.errors import (
    ConfirmationTimeout,
    ConnectionFailure,
    InsufficientFunds,
    SigningUnavailable,
)
from treasury_settler.settlement import (
    EnginePhase,
    OutcomeStatus,
    SettlementOutcome,
    SettlementState,
)


def test_counters_accumulate():
    state = SettlementState()

    state.add_signals_checked(450)
    state.add_signals_checked(450)
    state.add_realized(10**18)

    counters = state.snapshot().counters
    assert counters.signals_checked == 900
    assert counters.realized_wei == 10**18


def test_counters_reject_negative_increments():
    state = SettlementState()

    with pytest.raises(ValueError):
        state.add_signals_checked(-1)
    with pytest.raises(ValueError):
        state.add_realized(-5)

    assert state.snapshot().counters.signals_checked == 0


def test_record_outcome_and_skip():
    state = SettlementState()
    outcome = SettlementOutcome(
        status=OutcomeStatus.NO_SIGNAL, trigger="timer", message="none"
    ).finish()

    state.record_skip()
    state.record_outcome(outcome)

    snap = state.snapshot()
    assert snap.last_outcome is outcome
    assert snap.last_outcome_at == outcome.finished_at
    assert snap.counters.ticks_completed == 1
    assert snap.counters.ticks_skipped == 1


def test_snapshot_is_immutable_copy():
    state = SettlementState()
    state.set_phase(EnginePhase.TRANSFERRING)
    before = state.snapshot()

    state.set_phase(EnginePhase.IDLE)
    state.observe_balance(123)

    assert before.phase is EnginePhase.TRANSFERRING
    assert before.last_balance_wei is None
    assert state.snapshot().last_balance_wei == 123


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (SigningUnavailable("no key"), OutcomeStatus.SIGNING_UNAVAILABLE),
        (ConnectionFailure("down"), OutcomeStatus.CONNECTION_FAILURE),
        (InsufficientFunds("poor"), OutcomeStatus.FAILED),
        (ConfirmationTimeout("slow", tx_hash="0xabc"), OutcomeStatus.PENDING_CONFIRMATION),
    ],
)
def test_outcome_from_error_maps_status(error, status):
    outcome = SettlementOutcome.from_error(error, "timer")

    assert outcome.status is status
    assert outcome.error == error.reason
    assert outcome.message == error.message


def test_confirmation_timeout_outcome_carries_hash():
    outcome = SettlementOutcome.from_error(
        ConfirmationTimeout("slow", tx_hash="0xabc"), "manual"
    )

    assert outcome.tx_hash == "0xabc"
    assert outcome.details["tx_hash"] == "0xabc"
    assert outcome.ok is True
    assert outcome.ambiguous is True


def test_outcome_to_dict_is_json_friendly():
    outcome = SettlementOutcome(
        status=OutcomeStatus.SETTLED,
        trigger="timer",
        message="done",
        amount_wei=10**18,
    ).finish()

    data = outcome.to_dict()

    assert data["status"] == "settled"
    assert data["ok"] is True
    assert data["amount_eth"] == "1.000000"
    assert isinstance(data["started_at"], str)
    assert isinstance(data["finished_at"], str)


def test_skipped_outcome_is_ok():
    outcome = SettlementOutcome.skipped("timer")

    assert outcome.status is OutcomeStatus.SKIPPED
    assert outcome.ok is True
    assert outcome.finished_at is not None
