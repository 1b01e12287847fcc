"""Exponential backoff for retry scheduling."""

from dataclasses import dataclass
from datetime import timedelta

_ONE_US = timedelta(microseconds=1)


def backoff_delay(attempt: int, base: timedelta, cap: timedelta) -> timedelta:
    """Return ``min(base * 2**attempt, cap)``.

    Computed in integer microseconds so arbitrarily large attempt values
    saturate at ``cap`` instead of overflowing ``timedelta``.

    Args:
        attempt: Number of failed attempts so far (>= 0).
        base: Delay for attempt 0.
        cap: Upper bound for any delay.

    Raises:
        ValueError: If attempt is negative or a duration is negative.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    if base < timedelta(0) or cap < timedelta(0):
        raise ValueError("base and cap must be non-negative")

    base_us = base // _ONE_US
    cap_us = cap // _ONE_US
    if base_us == 0:
        return timedelta(0)
    # base_us << attempt exceeds cap_us once attempt passes cap's bit length
    if attempt > cap_us.bit_length():
        return cap
    return timedelta(microseconds=min(base_us << attempt, cap_us))


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff bounds bound to a pair of durations."""

    base: timedelta
    cap: timedelta

    def __post_init__(self) -> None:
        if self.cap < self.base:
            raise ValueError("cap must be >= base")

    def delay(self, attempt: int) -> timedelta:
        return backoff_delay(attempt, self.base, self.cap)
