from __future__ import annotations

from decimal import Decimal

from web3 import Web3


def eth_to_wei(amount: Decimal | int | str) -> int:
    """Convert an ETH amount to an integer number of wei.

    Args:
        amount: ETH amount. Strings are parsed as ``Decimal`` so that values such
            as ``"0.1"`` keep their exact decimal meaning.

    Returns:
        The amount in wei.

    Notes:
        - Fractions smaller than one wei are truncated toward zero.
        - Negative amounts are converted as-is; callers enforce positivity.
    """
    value = Decimal(amount)
    sign = -1 if value < 0 else 1
    return sign * int(Web3.to_wei(abs(value), "ether"))


def wei_to_eth(wei: int) -> Decimal:
    if wei < 0:
        return -Decimal(Web3.from_wei(-wei, "ether"))
    return Decimal(Web3.from_wei(wei, "ether"))


def format_eth(wei: int, places: int = 6) -> str:
    """Format wei as a fixed-precision ETH string (e.g. ``"0.005000"``)."""
    return f"{wei_to_eth(wei):.{places}f}"


def format_usd(wei: int, price_usd: Decimal) -> str:
    return f"{wei_to_eth(wei) * price_usd:.2f}"
