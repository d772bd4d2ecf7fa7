"""Single-account signer that turns a transfer request into a confirmed transaction."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from eth_account import Account
from eth_account.signers.local import LocalAccount
from pydantic import SecretStr
from web3 import Web3

from ..clients.quorum import QuorumClient, to_hex_string
from ..errors import InsufficientFunds, InvalidAmount, SigningUnavailable
from ..units import format_eth

if TYPE_CHECKING:
    from ..settings import SettlerSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferReceipt:
    """A transfer that was submitted and observed in a block."""

    tx_hash: str
    block_number: int
    block_hash: str
    amount_wei: int
    recipient: str

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class AccountSigner:
    """Holds the credential for exactly one account.

    The credential never leaves this object: it is not logged, serialized
    or included in ``repr``.
    """

    def __init__(
        self,
        private_key: SecretStr,
        client: QuorumClient,
        *,
        gas_limit: int = 25_000,
        confirmation_timeout: float = 120.0,
    ):
        self._account: LocalAccount = Account.from_key(  # pyrefly: ignore
            private_key.get_secret_value()
        )
        self.client = client
        self.gas_limit = gas_limit
        self.confirmation_timeout = confirmation_timeout

    @classmethod
    def from_settings(
        cls, settings: SettlerSettings, client: QuorumClient
    ) -> AccountSigner | None:
        """Build the signer, or return ``None`` when no credential is configured."""
        if settings.private_key is None:
            logger.warning(
                "No private key configured; transfers and withdrawals are disabled"
            )
            return None

        signer = cls(
            settings.private_key,
            client,
            gas_limit=settings.gas_limit,
            confirmation_timeout=settings.confirmation_timeout,
        )
        logger.info("Treasury account initialized: %s", signer.address)
        return signer

    @property
    def address(self) -> str:
        return self._account.address

    def __repr__(self) -> str:
        return f"AccountSigner(address={self.address!r})"

    async def balance(self) -> int:
        return await self.client.get_balance(self.address)

    async def transfer(self, amount_wei: int, recipient: str) -> TransferReceipt:
        """Sign, submit and confirm a transfer of exactly ``amount_wei``.

        The balance precondition is checked before anything is signed, so an
        underfunded account never produces a network submission. A submitted
        transfer is never retried here: on ``ConfirmationTimeout`` it may still
        land later.

        Args:
            amount_wei: Value to transfer, in wei
            recipient: Destination address

        Returns:
            TransferReceipt with the transaction hash and confirming block

        Raises:
            InvalidAmount: If ``amount_wei`` is not positive
            InsufficientFunds: If the quorum-checked balance is below ``amount_wei``
            NoQuorum / ConnectionFailure: From the quorum client reads
            SubmissionRejected: If the network refuses the transaction
            ConfirmationTimeout: If no receipt is observed in time
        """
        if amount_wei <= 0:
            raise InvalidAmount(
                f"Transfer amount must be positive (got {amount_wei} wei)",
                details={"amount_wei": amount_wei},
            )

        to_address = Web3.to_checksum_address(recipient)
        balance = await self.client.get_balance(self.address)
        if balance < amount_wei:
            raise InsufficientFunds(
                "Insufficient ETH balance in treasury to cover transfer value",
                details={
                    "balance_eth": format_eth(balance),
                    "required_eth": format_eth(amount_wei),
                    "treasury_wallet": self.address,
                },
            )

        fees = await self.client.get_fee_estimate()
        nonce = await self.client.get_nonce(self.address)

        tx = {
            "type": 2,
            "chainId": self.client.network_id,
            "nonce": nonce,
            "to": to_address,
            "value": amount_wei,
            "gas": self.gas_limit,
            "maxFeePerGas": fees.max_fee_per_gas,
            "maxPriorityFeePerGas": fees.max_priority_fee_per_gas,
        }
        signed = self._account.sign_transaction(tx)
        tx_hash = to_hex_string(signed.hash)

        logger.info(
            "Submitting transfer of %s ETH to %s (nonce %d, tx %s)",
            format_eth(amount_wei),
            to_address,
            nonce,
            tx_hash,
        )
        handle = await self.client.submit(signed.raw_transaction, tx_hash)
        confirmation = await self.client.await_confirmation(
            handle, timeout=self.confirmation_timeout
        )

        return TransferReceipt(
            tx_hash=confirmation.tx_hash,
            block_number=confirmation.block_number,
            block_hash=confirmation.block_hash,
            amount_wei=amount_wei,
            recipient=to_address,
        )


def require_signer(signer: AccountSigner | None) -> AccountSigner:
    """Return ``signer`` or raise ``SigningUnavailable`` when none is configured."""
    if signer is None:
        raise SigningUnavailable(
            "Treasury private key not set. Cannot perform real transactions."
        )
    return signer
