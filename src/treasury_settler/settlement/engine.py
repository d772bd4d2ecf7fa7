"""Scheduled, single-flight settlement pipeline."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from web3 import Web3

from .. import __version__
from ..clients.quorum import QuorumClient
from ..constants import ENGINE_NAME
from ..errors import (
    ConnectionFailure,
    InsufficientFunds,
    InvalidAmount,
    InvalidRecipient,
    SettlementError,
)
from ..settings import SettlerSettings
from ..signals import BaseSignalOracle, SignalBatch, get_oracle_class
from ..units import eth_to_wei, format_eth, format_usd
from ..wallet.signer import AccountSigner, TransferReceipt, require_signer
from .outcome import OutcomeStatus, SettlementOutcome
from .state import EnginePhase, SettlementState

logger = logging.getLogger(__name__)


class SettlementEngine:
    """Runs settlement ticks on a timer or on demand, one at a time.

    A tick moves through ``checking-balance -> evaluating-signals ->
    transferring -> recording-result`` and always ends by recording an
    outcome. Every typed failure ends the tick, never the engine.

    The self-settlement transfer (the treasury paying itself a fixed
    amount whenever any signal is actionable) is a placeholder for a real
    external profit source, not a template for moving funds.
    """

    def __init__(
        self,
        settings: SettlerSettings,
        client: QuorumClient,
        signer: AccountSigner | None,
        oracle: BaseSignalOracle,
        state: SettlementState | None = None,
    ):
        self.settings = settings
        self.client = client
        self.signer = signer
        self.oracle = oracle
        self.state = state or SettlementState()

        self.min_balance_wei = eth_to_wei(settings.min_balance_eth)
        self.transfer_amount_wei = eth_to_wei(settings.transfer_amount_eth)
        self.withdraw_reserve_wei = eth_to_wei(settings.withdraw_reserve_eth)

        self._guard = asyncio.Lock()
        self._tasks: set[asyncio.Task[SettlementOutcome]] = set()
        self._stop_event: asyncio.Event | None = None

    @classmethod
    def from_settings(cls, settings: SettlerSettings) -> SettlementEngine:
        """Wire the quorum client, optional signer and configured oracle."""
        client = QuorumClient(
            settings.endpoints,
            settings.quorum,
            timeout=settings.rpc_timeout,
            connect_timeout=settings.connect_timeout,
            retries=settings.rpc_retries,
            max_concurrent_calls=settings.rpc_max_concurrent_calls,
            poll_interval=settings.confirmation_poll_interval,
            priority_fee_wei=int(Web3.to_wei(settings.priority_fee_gwei, "gwei")),
        )
        signer = AccountSigner.from_settings(settings, client)
        oracle = get_oracle_class(settings.signal_oracle)(settings)
        return cls(settings, client, signer, oracle)

    @property
    def in_flight(self) -> bool:
        return self._guard.locked()

    async def connect(self) -> bool:
        """Establish connection state; failures are logged, not raised."""
        try:
            await self.client.connect()
            return True
        except ConnectionFailure as e:
            logger.error("Failed to connect to any RPC endpoint: %s", e)
            return False

    async def _ensure_connected(self) -> None:
        if not self.client.is_connected:
            logger.info(
                "Not connected (state=%s); reconnecting",
                self.client.connection_state.value,
            )
            await self.client.connect()

    async def run_tick(self, trigger: str = "timer") -> SettlementOutcome:
        """Run one settlement tick unless another is already in flight.

        The timer and manual triggers share this path and its guard. A tick
        that finds the guard held is skipped and not recorded as the last
        outcome.
        """
        if self._guard.locked():
            self.state.record_skip()
            logger.debug("Settlement in flight; skipping %s tick", trigger)
            return SettlementOutcome.skipped(trigger)

        async with self._guard:
            try:
                outcome = await self._settle(trigger)
                self.state.set_phase(EnginePhase.RECORDING_RESULT)
                self.state.record_outcome(outcome.finish())
            finally:
                self.state.set_phase(EnginePhase.IDLE)
        return outcome

    async def _settle(self, trigger: str) -> SettlementOutcome:
        batch: SignalBatch | None = None

        def _counts() -> dict[str, int]:
            if batch is None:
                return {}
            return {"signals_checked": batch.size, "positive_signals": batch.positive}

        try:
            self.state.set_phase(EnginePhase.CHECKING_BALANCE)
            signer = require_signer(self.signer)
            await self._ensure_connected()

            balance = await signer.balance()
            self.state.observe_balance(balance)
            if balance < self.min_balance_wei:
                logger.warning(
                    "Treasury balance %s ETH below minimum %s ETH; needs funding",
                    format_eth(balance),
                    format_eth(self.min_balance_wei),
                )
                return SettlementOutcome(
                    status=OutcomeStatus.NEEDS_FUNDING,
                    trigger=trigger,
                    message="Treasury needs gas funding",
                    error="needs_funding",
                    details={
                        "treasury_balance_eth": format_eth(balance),
                        "min_required_eth": format_eth(self.min_balance_wei),
                        "treasury_wallet": signer.address,
                    },
                )

            self.state.set_phase(EnginePhase.EVALUATING_SIGNALS)
            batch = await self.oracle.produce_batch(self.settings.signals_per_tick)
            self.state.add_signals_checked(batch.size)
            if batch.positive == 0:
                logger.info(
                    "No actionable signals in %d checks; skipping transfer", batch.size
                )
                return SettlementOutcome(
                    status=OutcomeStatus.NO_SIGNAL,
                    trigger=trigger,
                    message=f"No actionable signals found in {batch.size} checks.",
                    **_counts(),
                )

            self.state.set_phase(EnginePhase.TRANSFERRING)
            logger.info(
                "%d/%d signals actionable; settling %s ETH to treasury",
                batch.positive,
                batch.size,
                format_eth(self.transfer_amount_wei),
            )
            receipt = await signer.transfer(self.transfer_amount_wei, signer.address)
            self.state.add_realized(receipt.amount_wei)
            logger.info(
                "Settlement confirmed: tx %s in block %d",
                receipt.tx_hash,
                receipt.block_number,
            )
            return self._receipt_outcome(
                OutcomeStatus.SETTLED,
                trigger,
                receipt,
                message=(
                    f"Batch of {batch.size} checks found {batch.positive} actionable "
                    f"signals; {format_eth(receipt.amount_wei)} ETH settled to treasury."
                ),
                **_counts(),
            )

        except SettlementError as exc:
            log = logger.warning if exc.retry_recommended else logger.error
            log("Settlement tick failed (%s): %s", exc.reason, exc)
            return SettlementOutcome.from_error(
                exc,
                trigger,
                amount_wei=self.transfer_amount_wei if batch and batch.positive else None,
                **_counts(),
            )
        except Exception as exc:
            logger.exception("Unexpected error during settlement tick")
            return SettlementOutcome(
                status=OutcomeStatus.FAILED,
                trigger=trigger,
                message=str(exc),
                error="unexpected_error",
                **_counts(),
            )

    def _receipt_outcome(
        self,
        status: OutcomeStatus,
        trigger: str,
        receipt: TransferReceipt,
        *,
        message: str,
        **fields: Any,
    ) -> SettlementOutcome:
        return SettlementOutcome(
            status=status,
            trigger=trigger,
            message=message,
            amount_wei=receipt.amount_wei,
            recipient=receipt.recipient,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            block_hash=receipt.block_hash,
            details={"explorer_url": f"{self.settings.explorer_tx_url}{receipt.tx_hash}"},
            **fields,
        )

    async def withdraw(
        self, amount_eth: Decimal, recipient: str | None = None
    ) -> SettlementOutcome:
        """Move ``amount_eth`` out of the treasury, keeping the reserve behind.

        Checks run in order: signer present, amount finite and positive,
        recipient valid, amount no more than balance minus the reserve.
        Withdrawals wait for any in-flight tick rather than skipping, and never
        replace the last tick outcome.
        """
        to_address = recipient or self.settings.withdraw_recipient
        amount_wei: int | None = None

        async with self._guard:
            try:
                signer = require_signer(self.signer)
                if not Decimal(amount_eth).is_finite():
                    raise InvalidAmount(
                        "Invalid withdrawable amount.",
                        details={"requested_eth": str(amount_eth)},
                    )
                amount_wei = eth_to_wei(amount_eth)
                if amount_wei <= 0:
                    raise InvalidAmount(
                        "Invalid withdrawable amount.",
                        details={"requested_eth": str(amount_eth)},
                    )
                if not Web3.is_address(to_address):
                    raise InvalidRecipient(
                        f"Invalid withdrawal recipient: {to_address}",
                        details={"recipient": to_address},
                    )

                await self._ensure_connected()
                balance = await signer.balance()
                self.state.observe_balance(balance)
                max_send = balance - self.withdraw_reserve_wei
                if amount_wei > max_send:
                    raise InsufficientFunds(
                        "Invalid withdrawable amount.",
                        details={
                            "requested_eth": format_eth(amount_wei),
                            "treasury_balance_eth": format_eth(balance),
                            "max_withdrawable_eth": format_eth(max(max_send, 0)),
                            "reserve_eth": format_eth(self.withdraw_reserve_wei),
                        },
                    )

                logger.info(
                    "Withdrawing %s ETH from treasury to %s",
                    format_eth(amount_wei),
                    to_address,
                )
                receipt = await signer.transfer(amount_wei, to_address)
                return self._receipt_outcome(
                    OutcomeStatus.WITHDRAWN,
                    "withdraw",
                    receipt,
                    message=f"Withdrew {format_eth(amount_wei)} ETH to {receipt.recipient}.",
                ).finish()

            except SettlementError as exc:
                logger.error("Withdrawal rejected (%s): %s", exc.reason, exc)
                return SettlementOutcome.from_error(
                    exc, "withdraw", amount_wei=amount_wei, recipient=to_address
                ).finish()

    def snapshot(self) -> dict[str, Any]:
        """Status snapshot from current state; performs no I/O."""
        snap = self.state.snapshot()
        price = self.settings.reference_price_usd
        balance = snap.last_balance_wei
        last = snap.last_outcome

        return {
            "name": ENGINE_NAME,
            "version": __version__,
            "status": self.client.connection_state.value,
            "block_height": self.client.height,
            "network_id": self.client.network_id,
            "endpoints": len(self.client.pool),
            "quorum": self.client.quorum,
            "phase": snap.phase.value,
            "in_flight": self.in_flight,
            "mode": (
                f"{self.settings.signals_per_tick} signal checks every "
                f"{self.settings.tick_interval:g}s"
            ),
            "treasury_wallet": (
                self.signer.address if self.signer else self.settings.placeholder_address
            ),
            "signing_available": self.signer is not None,
            "treasury_balance_eth": format_eth(balance) if balance is not None else None,
            "treasury_balance_usd": (
                format_usd(balance, price) if balance is not None else None
            ),
            "balance_observed_at": (
                snap.last_balance_at.isoformat() if snap.last_balance_at else None
            ),
            "min_gas_required_eth": format_eth(self.min_balance_wei),
            "transfer_amount_eth": format_eth(self.transfer_amount_wei),
            "total_signals_checked": snap.counters.signals_checked,
            "total_realized_eth": format_eth(snap.counters.realized_wei),
            "total_realized_usd": format_usd(snap.counters.realized_wei, price),
            "ticks_completed": snap.counters.ticks_completed,
            "ticks_skipped": snap.counters.ticks_skipped,
            "last_execution_result": last.to_dict() if last else None,
            "last_execution_at": (
                snap.last_outcome_at.isoformat() if snap.last_outcome_at else None
            ),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def status(self, refresh_balance: bool = True) -> dict[str, Any]:
        """Snapshot, optionally refreshing the treasury balance first.

        A failed refresh is reported in the snapshot instead of raised.
        """
        balance_error: str | None = None
        if refresh_balance and self.signer is not None:
            try:
                await self._ensure_connected()
                self.state.observe_balance(await self.signer.balance())
            except SettlementError as exc:
                logger.warning("Balance refresh failed (%s): %s", exc.reason, exc)
                balance_error = exc.reason

        data = self.snapshot()
        data["balance_error"] = balance_error
        return data

    def _spawn_tick(self) -> None:
        task = asyncio.create_task(self.run_tick("timer"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run_forever(self) -> None:
        """Fire a tick now and then every ``tick_interval`` until ``stop()``.

        Each firing is its own task, so a slow tick makes later firings hit
        the single-flight guard and skip instead of queueing up.
        """
        interval = self.settings.tick_interval
        self._stop_event = asyncio.Event()
        logger.info(
            "Starting settlement engine: %d signal checks every %gs",
            self.settings.signals_per_tick,
            interval,
        )
        try:
            while not self._stop_event.is_set():
                self._spawn_tick()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self._cancel_in_flight()
            logger.info("Settlement engine stopped")

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def _cancel_in_flight(self) -> None:
        """Cancel running ticks; shutdown does not wait on confirmation polling."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        await self.client.close()
