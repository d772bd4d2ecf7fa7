"""Base class for signal oracles."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from ..settings import SettlerSettings


@dataclass(frozen=True)
class Signal:
    """One actionable/not-actionable verdict from an oracle."""

    id: int
    actionable: bool
    label: str = ""


@dataclass(frozen=True)
class SignalBatch:
    """Fixed-size ordered signals produced for a single tick."""

    signals: tuple[Signal, ...]

    @property
    def size(self) -> int:
        return len(self.signals)

    @property
    def positive(self) -> int:
        return sum(1 for signal in self.signals if signal.actionable)

    @property
    def positive_ids(self) -> list[int]:
        return [signal.id for signal in self.signals if signal.actionable]

    def __iter__(self) -> Iterator[Signal]:
        return iter(self.signals)

    def __len__(self) -> int:
        return len(self.signals)


class BaseSignalOracle(ABC):
    """Source of boolean signals consumed by the settlement engine.

    The engine only relies on ``produce_batch`` returning exactly ``size``
    signals; it assumes nothing about how many of them are actionable.
    """

    def __init__(self, config: SettlerSettings):
        """Initialize the oracle with configuration."""
        self.config = config

    @property
    @abstractmethod
    def oracle_name(self) -> str:
        """Return the name of this oracle."""
        ...

    @abstractmethod
    async def produce_batch(self, size: int) -> SignalBatch:
        """Produce one batch of ``size`` signals."""
        ...
