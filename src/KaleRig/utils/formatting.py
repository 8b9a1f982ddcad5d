"""Formatting utilities for durations and KALE amounts."""


def format_elapsed(seconds: float) -> str:
    """Format elapsed block time as 'X min Y sec'"""
    seconds = max(0, int(seconds))
    return f"{seconds // 60} min {seconds % 60} sec"


def format_countdown(seconds: float) -> str:
    """Format a countdown as MM:SS"""
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    return f"{minutes:02d}:{secs:02d}"


def format_kale(amount: float) -> str:
    """Format a KALE amount with up to 7 decimals (stroop precision)"""
    if amount is None:
        return "0 KALE"
    text = f"{amount:.7f}".rstrip("0").rstrip(".")
    return f"{text} KALE"
