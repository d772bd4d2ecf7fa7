"""Typed failures raised by the quorum client, signer and settlement engine."""

from __future__ import annotations

from typing import Any


class SettlementError(Exception):
    """Base class for every failure the settlement pipeline knows how to record.

    Attributes:
        reason: Stable snake_case code surfaced in outcomes and CLI output
        retry_recommended: Whether the next tick is expected to succeed unchanged
        details: Diagnostic context (balances, thresholds, endpoint errors)
    """

    reason = "settlement_error"
    default_retry_recommended = False

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        retry_recommended: bool | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.retry_recommended = (
            self.default_retry_recommended
            if retry_recommended is None
            else retry_recommended
        )


class NoQuorum(SettlementError):
    """Endpoints answered but not enough of them agreed on one value."""

    reason = "no_quorum"
    default_retry_recommended = True


class ConnectionFailure(SettlementError):
    """No endpoint in the pool could be reached."""

    reason = "connection_failure"
    default_retry_recommended = True


class SigningUnavailable(SettlementError):
    """No credential is configured; stays true until the process is reconfigured."""

    reason = "signing_unavailable"


class InsufficientFunds(SettlementError):
    """Local balance precondition failed before anything was submitted."""

    reason = "insufficient_funds"
    default_retry_recommended = True


class InvalidAmount(SettlementError):
    """Requested amount is not a positive, finite ETH value."""

    reason = "invalid_amount"


class ConfirmationTimeout(SettlementError):
    """Submission was accepted but no receipt was observed before the deadline.

    The transfer may still land later, so callers report it as ambiguous and
    never resubmit it as a fresh transfer.
    """

    reason = "confirmation_timeout"

    def __init__(self, message: str, tx_hash: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.tx_hash = tx_hash
        self.details.setdefault("tx_hash", tx_hash)


class SubmissionRejected(SettlementError):
    """The network refused the transaction, or it was mined and reverted."""

    reason = "submission_rejected"


class InvalidRecipient(SettlementError):
    """Withdrawal recipient is not a valid address."""

    reason = "invalid_recipient"
