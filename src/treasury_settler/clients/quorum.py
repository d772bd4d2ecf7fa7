"""Quorum-checked access to a ledger through redundant JSON-RPC endpoints."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Iterator, TypeVar

import backoff
from eth_typing import URI
from web3 import AsyncWeb3, Web3
from web3.exceptions import ProviderConnectionError, Web3RPCError

from ..constants import BASE_FEE_MULTIPLIER
from ..errors import ConfirmationTimeout, ConnectionFailure, NoQuorum, SubmissionRejected
from ..logger import TRACE

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (ProviderConnectionError, OSError)

# JSON-RPC error fragments meaning "this node already has the transaction"
_ALREADY_KNOWN_MARKERS = ("already known", "known transaction", "already imported")


class ConnectionState(str, Enum):
    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class Endpoint:
    """A single read/submit endpoint for one ledger network."""

    url: str
    network_id: int

    def __str__(self) -> str:
        return self.url


class EndpointPool:
    """Ordered endpoints for one network; order is priority, not weight."""

    def __init__(self, endpoints: Iterable[Endpoint]):
        deduped: dict[str, Endpoint] = {}
        for endpoint in endpoints:
            deduped.setdefault(endpoint.url.rstrip("/"), endpoint)
        self._endpoints: tuple[Endpoint, ...] = tuple(deduped.values())

        network_ids = {endpoint.network_id for endpoint in self._endpoints}
        if len(network_ids) > 1:
            raise ValueError(
                f"Endpoint pool mixes networks: {sorted(network_ids)}"
            )

    @classmethod
    def from_urls(cls, urls: Iterable[str], network_id: int) -> EndpointPool:
        return cls(Endpoint(url=url, network_id=network_id) for url in urls)

    def prepend(self, endpoint: Endpoint) -> EndpointPool:
        """Return a pool with ``endpoint`` as the preferred entry."""
        return EndpointPool([endpoint, *self._endpoints])

    @property
    def network_id(self) -> int:
        if not self._endpoints:
            raise ValueError("Endpoint pool is empty")
        return self._endpoints[0].network_id

    def __iter__(self) -> Iterator[Endpoint]:
        return iter(self._endpoints)

    def __len__(self) -> int:
        return len(self._endpoints)

    def __getitem__(self, index: int) -> Endpoint:
        return self._endpoints[index]


@dataclass(frozen=True)
class FeeEstimate:
    """EIP-1559 fee parameters in wei."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int


@dataclass(frozen=True)
class TransactionHandle:
    tx_hash: str
    accepted_by: tuple[str, ...]
    submitted_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Confirmation:
    tx_hash: str
    block_number: int
    block_hash: str


@dataclass
class EndpointResponse:
    """One endpoint's answer (or failure) to a fanned-out request."""

    endpoint: Endpoint
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def to_hex_string(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return Web3.to_hex(value)


def _describe_errors(responses: Iterable[EndpointResponse]) -> dict[str, str]:
    return {
        r.endpoint.url: f"{type(r.error).__name__}: {r.error}"
        for r in responses
        if r.error is not None
    }


def resolve_quorum(
    label: str, responses: list[EndpointResponse], threshold: int
) -> Any:
    """Pick the value reported by at least ``threshold`` endpoints.

    Responses must be in pool priority order. The most common value wins;
    ties go to the value first reported by the highest-priority endpoint.

    Raises:
        ConnectionFailure: If no endpoint answered at all
        NoQuorum: If answers exist but none reaches ``threshold``
    """
    successes = [r for r in responses if r.ok]
    if not successes:
        raise ConnectionFailure(
            f"No endpoint answered {label}",
            details={"errors": _describe_errors(responses)},
        )

    counts = Counter(r.value for r in successes)
    best_value: Any = None
    best_count = 0
    for response in successes:
        count = counts[response.value]
        if count > best_count:
            best_value, best_count = response.value, count

    if best_count < threshold:
        raise NoQuorum(
            f"No quorum for {label}: best agreement {best_count}/{threshold}",
            details={
                "quorum": threshold,
                "responses": {r.endpoint.url: str(r.value) for r in successes},
                "errors": _describe_errors(responses),
            },
        )

    logger.log(
        TRACE,
        "Quorum for %s reached with %d/%d agreeing endpoints",
        label,
        best_count,
        len(responses),
    )
    return best_value


def _default_web3_factory(endpoint: Endpoint) -> AsyncWeb3:
    return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(URI(endpoint.url)))


class QuorumClient:
    """Answers ledger reads only when enough endpoints agree.

    Reads fan out to every endpoint in the pool concurrently and are joined
    before returning. Submissions are broadcast without requiring read quorum.
    """

    def __init__(
        self,
        pool: EndpointPool,
        quorum: int = 1,
        *,
        timeout: float = 10.0,
        connect_timeout: float = 15.0,
        retries: int = 2,
        max_concurrent_calls: int = 8,
        poll_interval: float = 2.0,
        priority_fee_wei: int = 10**9,
        web3_factory: Callable[[Endpoint], AsyncWeb3] | None = None,
    ):
        if len(pool) == 0:
            raise ValueError("QuorumClient requires at least one endpoint")
        if quorum < 1 or quorum > len(pool):
            raise ValueError(
                f"quorum must be between 1 and {len(pool)} (got {quorum})"
            )

        self.pool = pool
        self.quorum = quorum
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.retries = retries
        self.poll_interval = poll_interval
        self.priority_fee_wei = priority_fee_wei

        self.connection_state = ConnectionState.INITIALIZING
        self.height: int | None = None

        self._web3_factory = web3_factory or _default_web3_factory
        self._web3: dict[Endpoint, AsyncWeb3] = {}
        self._sem = asyncio.Semaphore(max_concurrent_calls)

    @property
    def network_id(self) -> int:
        return self.pool.network_id

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    def _w3(self, endpoint: Endpoint) -> AsyncWeb3:
        if endpoint not in self._web3:
            self._web3[endpoint] = self._web3_factory(endpoint)
        return self._web3[endpoint]

    async def _call(
        self, endpoint: Endpoint, fn: Callable[[AsyncWeb3], Awaitable[T]]
    ) -> T:
        """Throttle + backoff a single endpoint request."""
        w3 = self._w3(endpoint)

        @backoff.on_exception(
            backoff.expo,
            RETRYABLE_ERRORS,
            max_tries=self.retries + 1,
            jitter=backoff.full_jitter,
            logger=None,
        )
        async def _attempt() -> T:
            async with self._sem:
                return await fn(w3)

        return await _attempt()

    async def _fan_out(
        self,
        label: str,
        fn: Callable[[AsyncWeb3], Awaitable[Any]],
        timeout: float | None = None,
    ) -> list[EndpointResponse]:
        """Send ``fn`` to every endpoint and collect answers until the deadline.

        Endpoints still pending at the deadline are cancelled and reported as
        timed out. Results are returned in pool order.
        """
        deadline = self.timeout if timeout is None else timeout
        tasks = [asyncio.create_task(self._call(ep, fn)) for ep in self.pool]
        try:
            _, pending = await asyncio.wait(tasks, timeout=deadline)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        responses: list[EndpointResponse] = []
        for endpoint, task in zip(self.pool, tasks):
            if task in pending:
                error: BaseException = asyncio.TimeoutError(
                    f"{label} timed out after {deadline}s"
                )
                responses.append(EndpointResponse(endpoint, error=error))
            elif task.exception() is not None:
                responses.append(EndpointResponse(endpoint, error=task.exception()))
            else:
                responses.append(EndpointResponse(endpoint, value=task.result()))

        for response in responses:
            if response.error is not None:
                logger.debug(
                    "Endpoint %s failed %s: %s", response.endpoint, label, response.error
                )
        return responses

    async def _read(
        self, label: str, fn: Callable[[AsyncWeb3], Awaitable[Any]]
    ) -> Any:
        responses = await self._fan_out(label, fn)
        try:
            return resolve_quorum(label, responses, self.quorum)
        except ConnectionFailure:
            self.connection_state = ConnectionState.DISCONNECTED
            raise

    async def connect(self) -> int:
        """Probe every endpoint for the current height.

        Succeeds when at least one endpoint answers within ``connect_timeout``;
        later reads still enforce the quorum threshold. Safe to call again.

        Returns:
            The highest block height reported

        Raises:
            ConnectionFailure: If no endpoint answered in time
        """
        self.connection_state = ConnectionState.CONNECTING
        responses = await self._fan_out(
            "block number", _read_block_number, timeout=self.connect_timeout
        )
        heights = [r.value for r in responses if r.ok]

        if not heights:
            self.connection_state = ConnectionState.DISCONNECTED
            self.height = None
            logger.error("Failed to connect to all %d endpoints", len(self.pool))
            raise ConnectionFailure(
                "Failed to connect to all RPC endpoints",
                details={"errors": _describe_errors(responses)},
            )

        self.height = max(heights)
        self.connection_state = ConnectionState.CONNECTED
        logger.info(
            "Connected to network %d at block %d (%d/%d endpoints responding)",
            self.network_id,
            self.height,
            len(heights),
            len(self.pool),
        )
        return self.height

    async def get_block_number(self) -> int:
        return int(await self._read("block number", _read_block_number))

    async def get_balance(self, address: str) -> int:
        """Balance of ``address`` in wei, agreed by at least ``quorum`` endpoints."""
        checksum = Web3.to_checksum_address(address)

        async def _balance(w3: AsyncWeb3) -> int:
            return int(await w3.eth.get_balance(checksum, "latest"))

        return int(await self._read(f"balance of {checksum}", _balance))

    async def get_nonce(self, address: str) -> int:
        checksum = Web3.to_checksum_address(address)

        async def _nonce(w3: AsyncWeb3) -> int:
            return int(await w3.eth.get_transaction_count(checksum, "pending"))

        return int(await self._read(f"nonce of {checksum}", _nonce))

    async def get_fee_estimate(self) -> FeeEstimate:
        """EIP-1559 fee estimate derived from the latest base fee.

        Each endpoint's estimate is computed from its own view of the latest
        block, so endpoints that lag the head disagree and do not count
        toward quorum.
        """
        tip = self.priority_fee_wei

        async def _fees(w3: AsyncWeb3) -> FeeEstimate:
            block = await w3.eth.get_block("latest")
            base_fee = block.get("baseFeePerGas")
            if base_fee is None:
                raise ValueError("latest block has no baseFeePerGas (pre-London)")
            return FeeEstimate(
                max_fee_per_gas=BASE_FEE_MULTIPLIER * int(base_fee) + tip,
                max_priority_fee_per_gas=tip,
            )

        return await self._read("fee estimate", _fees)

    async def submit(self, raw_transaction: bytes, tx_hash: str) -> TransactionHandle:
        """Broadcast a signed transaction to every endpoint.

        Read quorum is not required: one accepting endpoint is enough, and a
        node that already holds the transaction counts as accepting.

        Raises:
            SubmissionRejected: If no endpoint accepted and at least one refused
            ConnectionFailure: If no endpoint could be reached
        """

        async def _send(w3: AsyncWeb3) -> str:
            return to_hex_string(await w3.eth.send_raw_transaction(raw_transaction))

        responses = await self._fan_out(f"submit {tx_hash}", _send)

        accepted: list[str] = []
        rejected: list[EndpointResponse] = []
        for response in responses:
            if response.ok:
                accepted.append(response.endpoint.url)
            elif isinstance(response.error, Web3RPCError):
                if any(m in str(response.error).lower() for m in _ALREADY_KNOWN_MARKERS):
                    accepted.append(response.endpoint.url)
                else:
                    rejected.append(response)

        if accepted:
            logger.info(
                "Transaction %s accepted by %d/%d endpoints",
                tx_hash,
                len(accepted),
                len(self.pool),
            )
            return TransactionHandle(tx_hash=tx_hash, accepted_by=tuple(accepted))

        if rejected:
            raise SubmissionRejected(
                f"Transaction {tx_hash} rejected by the network: {rejected[0].error}",
                details={"tx_hash": tx_hash, "errors": _describe_errors(rejected)},
            )

        self.connection_state = ConnectionState.DISCONNECTED
        raise ConnectionFailure(
            f"No endpoint reachable to submit {tx_hash}",
            details={"tx_hash": tx_hash, "errors": _describe_errors(responses)},
        )

    async def await_confirmation(
        self, handle: TransactionHandle, timeout: float
    ) -> Confirmation:
        """Poll for the transaction receipt until included or ``timeout`` elapses.

        A receipt from any single endpoint is accepted since inclusion is
        checked against the transaction hash itself.

        Raises:
            ConfirmationTimeout: If no receipt appeared in time
            SubmissionRejected: If the transaction was mined but reverted
        """
        tx_hash = handle.tx_hash

        async def _receipt(w3: AsyncWeb3) -> Any:
            return await w3.eth.get_transaction_receipt(tx_hash)

        try:
            async with asyncio.timeout(timeout):
                while True:
                    poll_deadline = min(self.timeout, max(self.poll_interval, 0.1))
                    responses = await self._fan_out(
                        f"receipt {tx_hash}", _receipt, timeout=poll_deadline
                    )
                    receipt = next((r.value for r in responses if r.ok and r.value), None)
                    if receipt is not None:
                        break
                    await asyncio.sleep(self.poll_interval)
        except TimeoutError as exc:
            raise ConfirmationTimeout(
                f"Transaction {tx_hash} not confirmed within {timeout}s",
                tx_hash=tx_hash,
                details={"timeout_seconds": timeout},
            ) from exc

        confirmation = Confirmation(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            block_hash=to_hex_string(receipt["blockHash"]),
        )
        if receipt.get("status", 1) == 0:
            raise SubmissionRejected(
                f"Transaction {tx_hash} reverted in block {confirmation.block_number}",
                details={"tx_hash": tx_hash, "block_number": confirmation.block_number},
            )

        logger.info(
            "Transaction %s confirmed in block %d", tx_hash, confirmation.block_number
        )
        return confirmation

    async def close(self) -> None:
        for endpoint, w3 in self._web3.items():
            try:
                await w3.provider.disconnect()  # type: ignore[union-attr]
            except AttributeError as e:
                logger.debug(
                    "Provider for %s has no disconnect method: %s", endpoint, e
                )
        self._web3.clear()


async def _read_block_number(w3: AsyncWeb3) -> int:
    return int(await w3.eth.block_number)
