"""Application state container."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .settings import SettlerSettings


@dataclass
class AppState:
    """Container for application-wide state and dependencies.

    Passed from the CLI into commands to avoid global state and enable testing.
    """

    settings: SettlerSettings
    logger: logging.Logger
