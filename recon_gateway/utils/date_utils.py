"""Date manipulation utilities"""

import time
from datetime import date, datetime, timezone


def days_between(later: date, earlier: date) -> int:
    """Signed whole-day delta (later - earlier)"""
    return (later - earlier).days


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def epoch_ms() -> float:
    """Current wall-clock time in epoch milliseconds"""
    return time.time() * 1000
