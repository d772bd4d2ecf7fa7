from __future__ import annotations

from .base import BaseSignalOracle, Signal, SignalBatch
from .random_oracle import RandomSignalOracle

ORACLE_REGISTRY: dict[str, type[BaseSignalOracle]] = {
    "random": RandomSignalOracle,
}


def get_oracle_class(oracle_name: str) -> type[BaseSignalOracle]:
    """Get oracle class by name.

    Args:
        oracle_name: Name of the oracle (case-insensitive)

    Returns:
        Oracle class

    Raises:
        ValueError: If oracle_name is not recognized
    """
    oracle_name_normalized = oracle_name.lower()
    if oracle_name_normalized not in ORACLE_REGISTRY:
        raise ValueError(
            f"Unknown signal oracle '{oracle_name}'. "
            f"Available: {', '.join(ORACLE_REGISTRY.keys())}"
        )
    return ORACLE_REGISTRY[oracle_name_normalized]


__all__ = [
    "BaseSignalOracle",
    "ORACLE_REGISTRY",
    "RandomSignalOracle",
    "Signal",
    "SignalBatch",
    "get_oracle_class",
]
