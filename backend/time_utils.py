"""
Time utilities for the task engine.

This module provides a single source of truth for time operations,
ensuring consistency across all operations and preventing clock drift issues.
"""

import time
from datetime import datetime, timezone
from typing import Optional

from errors import DeadlineExceededError


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


class Deadline:
    """
    Caller-supplied time budget for one operation.

    Uses the monotonic clock so wall-clock adjustments cannot extend or
    shorten the budget. `check()` is called between steps of long traversals
    and before write phases; it raises once the budget is spent.
    """

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def expired(self) -> bool:
        return time.monotonic() >= self._expires_at

    def check(self, operation: str) -> None:
        if self.expired():
            raise DeadlineExceededError(
                f"Operation '{operation}' exceeded its deadline of {self.seconds}s"
            )


def check_deadline(deadline: Optional[Deadline], operation: str) -> None:
    """No-op when the caller did not supply a deadline."""
    if deadline is not None:
        deadline.check(operation)
