from __future__ import annotations

import random

from ..settings import SettlerSettings
from .base import BaseSignalOracle, Signal, SignalBatch


class RandomSignalOracle(BaseSignalOracle):
    """Placeholder strategy: each path is independently actionable with probability p.

    Stands in for a real route search; swap it for any ``BaseSignalOracle``
    without touching the engine.
    """

    def __init__(self, config: SettlerSettings):
        super().__init__(config)
        self.probability = config.signal_probability
        self._rng = random.Random(config.signal_seed)

    @property
    def oracle_name(self) -> str:
        return "random"

    async def produce_batch(self, size: int) -> SignalBatch:
        if size < 0:
            raise ValueError(f"Batch size must be non-negative (got {size})")
        return SignalBatch(
            signals=tuple(
                Signal(
                    id=i + 1,
                    actionable=self._rng.random() < self.probability,
                    label=f"DEX_A/Token_{i} -> DEX_B/Token_{i}",
                )
                for i in range(size)
            )
        )
