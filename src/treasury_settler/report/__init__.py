from __future__ import annotations

from .formatter import format_status_table

__all__ = ["format_status_table"]
