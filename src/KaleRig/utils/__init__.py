"""Utility functions for formatting."""
from .formatting import format_countdown, format_elapsed, format_kale

__all__ = [
    "format_countdown",
    "format_elapsed",
    "format_kale",
]
