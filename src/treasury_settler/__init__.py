"""Quorum-checked treasury settlement engine."""

__version__ = "2.0.0"
