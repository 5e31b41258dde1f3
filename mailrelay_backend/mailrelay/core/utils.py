"""
Core Utilities

Shared helpers used across the engine.
"""
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Sequence, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of at most `size` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class Deadline:
    """
    Wall-clock budget for one invocation.

    The budget passed in should already exclude the stop buffer, so
    remaining() reaching zero means "checkpoint and leave now".
    """

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.started_at = clock()
        self.budget_seconds = budget_seconds

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed())

    def expired(self) -> bool:
        return self.remaining() <= 0

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining():.1f}s of {self.budget_seconds:.1f}s)"
