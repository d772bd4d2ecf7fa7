from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import ConfirmationTimeout, ConnectionFailure, SettlementError, SigningUnavailable
from ..units import format_eth


class OutcomeStatus(str, Enum):
    SETTLED = "settled"
    WITHDRAWN = "withdrawn"
    NO_SIGNAL = "no_signal"
    NEEDS_FUNDING = "needs_funding"
    PENDING_CONFIRMATION = "pending_confirmation"
    SIGNING_UNAVAILABLE = "signing_unavailable"
    CONNECTION_FAILURE = "connection_failure"
    FAILED = "failed"
    SKIPPED = "skipped"


# Statuses surfaced to callers as errors (non-zero exit code, 4xx-style)
ERROR_STATUSES = frozenset(
    {
        OutcomeStatus.NEEDS_FUNDING,
        OutcomeStatus.SIGNING_UNAVAILABLE,
        OutcomeStatus.CONNECTION_FAILURE,
        OutcomeStatus.FAILED,
    }
)

_ERROR_STATUS_BY_TYPE: dict[type[SettlementError], OutcomeStatus] = {
    SigningUnavailable: OutcomeStatus.SIGNING_UNAVAILABLE,
    ConnectionFailure: OutcomeStatus.CONNECTION_FAILURE,
    ConfirmationTimeout: OutcomeStatus.PENDING_CONFIRMATION,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SettlementOutcome:
    """Result of one settlement tick or withdrawal.

    The timer path, the manual trigger and withdrawals all produce this
    shape so callers can handle them uniformly.
    """

    status: OutcomeStatus
    trigger: str
    message: str
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    signals_checked: int = 0
    positive_signals: int = 0
    amount_wei: int | None = None
    recipient: str | None = None
    tx_hash: str | None = None
    block_number: int | None = None
    block_hash: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status not in ERROR_STATUSES

    @property
    def ambiguous(self) -> bool:
        """Submitted but unconfirmed; the transfer may still land."""
        return self.status is OutcomeStatus.PENDING_CONFIRMATION

    def finish(self) -> SettlementOutcome:
        if self.finished_at is None:
            self.finished_at = _utcnow()
        return self

    @classmethod
    def from_error(
        cls, exc: SettlementError, trigger: str, **fields: Any
    ) -> SettlementOutcome:
        """Convert a typed failure into a recorded outcome."""
        status = OutcomeStatus.FAILED
        for error_type, mapped in _ERROR_STATUS_BY_TYPE.items():
            if isinstance(exc, error_type):
                status = mapped
                break

        details = {**fields.pop("details", {}), **exc.details}
        if isinstance(exc, ConfirmationTimeout):
            fields.setdefault("tx_hash", exc.tx_hash)

        return cls(
            status=status,
            trigger=trigger,
            message=exc.message,
            error=exc.reason,
            details=details,
            **fields,
        )

    @classmethod
    def skipped(cls, trigger: str) -> SettlementOutcome:
        return cls(
            status=OutcomeStatus.SKIPPED,
            trigger=trigger,
            message="A settlement is already in flight; tick skipped.",
        ).finish()

    def to_dict(self) -> dict[str, Any]:
        """Convert outcome to a JSON-friendly dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        data["ok"] = self.ok
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["amount_eth"] = (
            format_eth(self.amount_wei) if self.amount_wei is not None else None
        )
        return data
