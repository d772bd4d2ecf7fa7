import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import ProviderConnectionError, TransactionNotFound, Web3RPCError

from treasury_settler.clients.quorum import (
    ConnectionState,
    Endpoint,
    EndpointPool,
    EndpointResponse,
    FeeEstimate,
    QuorumClient,
    TransactionHandle,
    resolve_quorum,
)
from treasury_settler.errors import (
    ConfirmationTimeout,
    ConnectionFailure,
    NoQuorum,
    SubmissionRejected,
)

TREASURY = "0x0fF31D4cdCE8B3f7929c04EbD4cd852608DC09f4"
TX_HASH = "0x" + "ab" * 32
GWEI = 10**9


class FakeEth:
    """Stand-in for AsyncWeb3.eth with per-endpoint canned answers."""

    def __init__(
        self,
        *,
        height=100,
        balance=0,
        nonce=0,
        base_fee=10 * GWEI,
        receipt=None,
        send_error=None,
        error=None,
        delay=0.0,
    ):
        self.height = height
        self.balance = balance
        self.nonce = nonce
        self.base_fee = base_fee
        self.receipt = receipt
        self.send_error = send_error
        self.error = error
        self.delay = delay
        self.sent: list[bytes] = []

    async def _answer(self, value):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return value

    @property
    async def block_number(self):
        return await self._answer(self.height)

    async def get_balance(self, address, block_identifier):
        return await self._answer(self.balance)

    async def get_transaction_count(self, address, block_identifier):
        return await self._answer(self.nonce)

    async def get_block(self, block_identifier):
        return await self._answer({"number": self.height, "baseFeePerGas": self.base_fee})

    async def send_raw_transaction(self, raw):
        await self._answer(None)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw)
        return TX_HASH

    async def get_transaction_receipt(self, tx_hash):
        await self._answer(None)
        if self.receipt is None:
            raise TransactionNotFound(f"Transaction {tx_hash} not found")
        return self.receipt


def create_mock_web3(eth: FakeEth):
    """Helper to create a mock AsyncWeb3 instance around a fake eth module."""
    mock = MagicMock()
    mock.eth = eth
    mock.provider.disconnect = AsyncMock()
    return mock


def make_client(*eths: FakeEth, quorum=1, **kwargs):
    pool = EndpointPool.from_urls(
        [f"https://rpc{i}.example" for i in range(len(eths))], network_id=1
    )
    web3s = {ep: create_mock_web3(eth) for ep, eth in zip(pool, eths)}
    kwargs.setdefault("timeout", 0.5)
    kwargs.setdefault("retries", 0)
    return QuorumClient(pool, quorum, web3_factory=web3s.__getitem__, **kwargs)


def test_endpoint_pool_prepend_keeps_priority_and_dedupes():
    pool = EndpointPool.from_urls(
        ["https://a.example", "https://b.example"], network_id=1
    )

    pool = pool.prepend(Endpoint("https://b.example/", 1))

    assert [ep.url for ep in pool] == ["https://b.example/", "https://a.example"]
    assert len(pool) == 2
    assert pool.network_id == 1


def test_endpoint_pool_rejects_mixed_networks():
    with pytest.raises(ValueError, match="mixes networks"):
        EndpointPool([Endpoint("https://a.example", 1), Endpoint("https://b.example", 5)])


def test_quorum_threshold_must_fit_pool():
    pool = EndpointPool.from_urls(["https://a.example"], network_id=1)

    with pytest.raises(ValueError, match="quorum must be between 1 and 1"):
        QuorumClient(pool, quorum=2)
    with pytest.raises(ValueError):
        QuorumClient(pool, quorum=0)


def test_resolve_quorum_prefers_highest_priority_on_tie():
    pool = EndpointPool.from_urls(["https://a.example", "https://b.example"], 1)
    responses = [EndpointResponse(pool[0], value=7), EndpointResponse(pool[1], value=10)]

    assert resolve_quorum("balance", responses, threshold=1) == 7


def test_resolve_quorum_counts_only_successes():
    pool = EndpointPool.from_urls(
        ["https://a.example", "https://b.example", "https://c.example"], 1
    )
    responses = [
        EndpointResponse(pool[0], error=RuntimeError("boom")),
        EndpointResponse(pool[1], value=5),
        EndpointResponse(pool[2], value=5),
    ]

    assert resolve_quorum("balance", responses, threshold=2) == 5


@pytest.mark.asyncio
async def test_balance_with_two_of_three_agreeing():
    client = make_client(
        FakeEth(balance=10), FakeEth(balance=10), FakeEth(balance=7), quorum=2
    )

    assert await client.get_balance(TREASURY) == 10


@pytest.mark.asyncio
async def test_balance_without_agreement_raises_no_quorum():
    client = make_client(
        FakeEth(balance=10), FakeEth(balance=7), FakeEth(balance=3), quorum=2
    )

    with pytest.raises(NoQuorum) as exc_info:
        await client.get_balance(TREASURY)

    assert exc_info.value.retry_recommended is True
    assert exc_info.value.details["quorum"] == 2
    assert len(exc_info.value.details["responses"]) == 3


@pytest.mark.asyncio
async def test_single_response_not_trusted_when_quorum_above_one():
    down = ProviderConnectionError("connection refused")
    client = make_client(
        FakeEth(balance=10), FakeEth(error=down), FakeEth(error=down), quorum=2
    )

    with pytest.raises(NoQuorum):
        await client.get_balance(TREASURY)


@pytest.mark.asyncio
async def test_quorum_one_uses_first_successful_response():
    down = ProviderConnectionError("connection refused")
    client = make_client(FakeEth(error=down), FakeEth(balance=42), FakeEth(balance=41))

    assert await client.get_balance(TREASURY) == 42


@pytest.mark.asyncio
async def test_all_endpoints_failing_is_connection_failure():
    down = ProviderConnectionError("connection refused")
    client = make_client(FakeEth(error=down), FakeEth(error=down))
    client.connection_state = ConnectionState.CONNECTED

    with pytest.raises(ConnectionFailure) as exc_info:
        await client.get_balance(TREASURY)

    assert client.connection_state is ConnectionState.DISCONNECTED
    assert set(exc_info.value.details["errors"]) == {
        "https://rpc0.example",
        "https://rpc1.example",
    }


@pytest.mark.asyncio
async def test_slow_endpoint_counts_as_failed_after_timeout():
    client = make_client(
        FakeEth(balance=10),
        FakeEth(balance=10),
        FakeEth(balance=10, delay=5.0),
        quorum=2,
        timeout=0.05,
    )

    assert await client.get_balance(TREASURY) == 10

    client.quorum = 3
    with pytest.raises(NoQuorum):
        await client.get_balance(TREASURY)


@pytest.mark.asyncio
async def test_connect_succeeds_with_one_responsive_endpoint():
    down = ProviderConnectionError("connection refused")
    client = make_client(FakeEth(error=down), FakeEth(height=120), FakeEth(height=118))

    assert client.connection_state is ConnectionState.INITIALIZING
    height = await client.connect()

    assert height == 120
    assert client.height == 120
    assert client.connection_state is ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_connect_fails_when_nothing_answers():
    down = ProviderConnectionError("connection refused")
    client = make_client(FakeEth(error=down), FakeEth(delay=5.0), connect_timeout=0.05)

    with pytest.raises(ConnectionFailure):
        await client.connect()

    assert client.connection_state is ConnectionState.DISCONNECTED
    assert client.height is None

    # retrying is safe once an endpoint recovers
    client._w3(client.pool[0]).eth.error = None
    assert await client.connect() == 100
    assert client.connection_state is ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_fee_estimate_from_base_fee():
    client = make_client(
        FakeEth(base_fee=10 * GWEI), FakeEth(base_fee=10 * GWEI), quorum=2
    )

    fees = await client.get_fee_estimate()

    assert fees == FeeEstimate(max_fee_per_gas=21 * GWEI, max_priority_fee_per_gas=GWEI)


@pytest.mark.asyncio
async def test_fee_estimate_disagreeing_heads_have_no_quorum():
    client = make_client(
        FakeEth(base_fee=10 * GWEI), FakeEth(base_fee=12 * GWEI), quorum=2
    )

    with pytest.raises(NoQuorum):
        await client.get_fee_estimate()


@pytest.mark.asyncio
async def test_nonce_is_quorum_checked():
    client = make_client(FakeEth(nonce=4), FakeEth(nonce=4), FakeEth(nonce=3), quorum=2)

    assert await client.get_nonce(TREASURY) == 4


@pytest.mark.asyncio
async def test_submit_broadcasts_to_every_endpoint():
    eths = [FakeEth(), FakeEth(), FakeEth()]
    client = make_client(*eths, quorum=3)

    handle = await client.submit(b"\x02signed", TX_HASH)

    assert handle.tx_hash == TX_HASH
    assert len(handle.accepted_by) == 3
    assert all(eth.sent == [b"\x02signed"] for eth in eths)


@pytest.mark.asyncio
async def test_submit_needs_only_one_acceptance():
    client = make_client(
        FakeEth(error=ProviderConnectionError("down")),
        FakeEth(send_error=Web3RPCError("nonce too low")),
        FakeEth(),
        quorum=3,
    )

    handle = await client.submit(b"\x02signed", TX_HASH)

    assert handle.accepted_by == ("https://rpc2.example",)


@pytest.mark.asyncio
async def test_submit_already_known_counts_as_accepted():
    client = make_client(FakeEth(send_error=Web3RPCError("already known")))

    handle = await client.submit(b"\x02signed", TX_HASH)

    assert handle.accepted_by == ("https://rpc0.example",)


@pytest.mark.asyncio
async def test_submit_rejected_by_every_endpoint():
    client = make_client(
        FakeEth(send_error=Web3RPCError("insufficient funds for gas * price + value")),
        FakeEth(error=ProviderConnectionError("down")),
    )

    with pytest.raises(SubmissionRejected, match="insufficient funds for gas"):
        await client.submit(b"\x02signed", TX_HASH)


@pytest.mark.asyncio
async def test_submit_with_no_reachable_endpoint():
    down = ProviderConnectionError("down")
    client = make_client(FakeEth(error=down), FakeEth(error=down))

    with pytest.raises(ConnectionFailure):
        await client.submit(b"\x02signed", TX_HASH)


@pytest.mark.asyncio
async def test_await_confirmation_returns_first_receipt():
    receipt = {"status": 1, "blockNumber": 123, "blockHash": "0x" + "cd" * 32}
    client = make_client(FakeEth(), FakeEth(receipt=receipt), poll_interval=0.01)
    handle = TransactionHandle(tx_hash=TX_HASH, accepted_by=("https://rpc0.example",))

    confirmation = await client.await_confirmation(handle, timeout=1.0)

    assert confirmation.tx_hash == TX_HASH
    assert confirmation.block_number == 123
    assert confirmation.block_hash == "0x" + "cd" * 32


@pytest.mark.asyncio
async def test_await_confirmation_times_out():
    client = make_client(FakeEth(), FakeEth(), poll_interval=0.01)
    handle = TransactionHandle(tx_hash=TX_HASH, accepted_by=("https://rpc0.example",))

    with pytest.raises(ConfirmationTimeout) as exc_info:
        await client.await_confirmation(handle, timeout=0.1)

    assert exc_info.value.tx_hash == TX_HASH
    assert exc_info.value.reason == "confirmation_timeout"


@pytest.mark.asyncio
async def test_await_confirmation_reverted_receipt_is_rejection():
    receipt = {"status": 0, "blockNumber": 9, "blockHash": "0x" + "00" * 32}
    client = make_client(FakeEth(receipt=receipt), poll_interval=0.01)
    handle = TransactionHandle(tx_hash=TX_HASH, accepted_by=("https://rpc0.example",))

    with pytest.raises(SubmissionRejected, match="reverted"):
        await client.await_confirmation(handle, timeout=1.0)


@pytest.mark.asyncio
async def test_close_disconnects_created_providers():
    client = make_client(FakeEth(), FakeEth())
    await client.connect()
    providers = [client._w3(ep).provider for ep in client.pool]

    await client.close()

    for provider in providers:
        provider.disconnect.assert_awaited_once()


@pytest.mark.asyncio
async def test_block_number_requires_agreement():
    client = make_client(FakeEth(height=50), FakeEth(height=50), FakeEth(height=49), quorum=2)

    assert await client.get_block_number() == 50


class FlakyEth(FakeEth):
    """Fails the first ``failures`` balance reads, then answers."""

    def __init__(self, failures, error_type=ProviderConnectionError, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.error_type = error_type
        self.attempts = 0

    async def get_balance(self, address, block_identifier):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error_type("connection reset by peer")
        return await super().get_balance(address, block_identifier)


@pytest.mark.asyncio
@pytest.mark.parametrize("error_type", [ProviderConnectionError, ConnectionResetError])
async def test_transient_connection_error_is_retried(error_type):
    eth = FlakyEth(failures=1, error_type=error_type, balance=10)
    client = make_client(eth, retries=1, timeout=3.0)

    assert await client.get_balance(TREASURY) == 10
    assert eth.attempts == 2


@pytest.mark.asyncio
async def test_without_retries_transient_error_fails_endpoint():
    eth = FlakyEth(failures=1, balance=10)
    client = make_client(eth, retries=0)

    with pytest.raises(ConnectionFailure):
        await client.get_balance(TREASURY)

    assert eth.attempts == 1


@pytest.mark.asyncio
async def test_non_connection_errors_are_not_retried():
    eth = FlakyEth(failures=1, error_type=ValueError, balance=10)
    client = make_client(eth, retries=3, timeout=3.0)

    with pytest.raises(ConnectionFailure):
        await client.get_balance(TREASURY)

    assert eth.attempts == 1
