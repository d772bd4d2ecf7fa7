"""Network and treasury constants."""

from decimal import Decimal
from typing import TypedDict


class NetworkDefaults(TypedDict):
    chain_id: int
    rpc_urls: list[str]
    explorer_tx_url: str


NETWORK_DEFAULTS: dict[str, NetworkDefaults] = {
    "mainnet": {
        "chain_id": 1,
        "rpc_urls": [
            "https://ethereum-rpc.publicnode.com",
            "https://cloudflare-eth.com",
            "https://eth.meowrpc.com",
            "https://eth.llamarpc.com",
            "https://1rpc.io/eth",
        ],
        "explorer_tx_url": "https://etherscan.io/tx/",
    },
    "sepolia": {
        "chain_id": 11155111,
        "rpc_urls": [
            "https://ethereum-sepolia-rpc.publicnode.com",
            "https://sepolia.drpc.org",
            "https://1rpc.io/sepolia",
        ],
        "explorer_tx_url": "https://sepolia.etherscan.io/tx/",
    },
    "holesky": {
        "chain_id": 17000,
        "rpc_urls": [
            "https://ethereum-holesky-rpc.publicnode.com",
            "https://holesky.drpc.org",
            "https://1rpc.io/holesky",
        ],
        "explorer_tx_url": "https://holesky.etherscan.io/tx/",
    },
}

# Shown in status output when no credential is configured
DEFAULT_TREASURY_ADDRESS = "0x0fF31D4cdCE8B3f7929c04EbD4cd852608DC09f4"
DEFAULT_WITHDRAW_RECIPIENT = "0x4024Fd78E2AD5532FBF3ec2B3eC83870FAe45fC7"

DEFAULT_MIN_BALANCE_ETH = Decimal("0.01")
DEFAULT_TRANSFER_AMOUNT_ETH = Decimal("1.0")
DEFAULT_WITHDRAW_RESERVE_ETH = Decimal("0.003")
DEFAULT_REFERENCE_PRICE_USD = Decimal("3450")

DEFAULT_SIGNALS_PER_TICK = 450
DEFAULT_GAS_LIMIT = 25_000

# EIP-1559 estimate: maxFee = 2 * baseFee + tip
BASE_FEE_MULTIPLIER = 2

ENGINE_NAME = "Treasury Settlement Engine"
