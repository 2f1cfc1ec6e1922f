import time
from typing import Callable, Optional

from .errors import ContextTimeout


class FanoutContext:
    """
    Carries the single deadline of a fan-out call.

    The deadline is an absolute value on the clock passed in (monotonic by
    default). Every suspension point in the engine checks it through
    remaining() so a whole fan-out shares one time budget.
    """

    def __init__(self, deadline: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.deadline = deadline
        self.clock = clock

    @classmethod
    def with_timeout(cls, timeout: float, clock: Callable[[], float] = time.monotonic) -> "FanoutContext":
        return cls(deadline=clock() + timeout, clock=clock)

    @classmethod
    def background(cls) -> "FanoutContext":
        """A context without a deadline. The engine rejects it."""
        return cls(deadline=None)

    @property
    def has_deadline(self) -> bool:
        return self.deadline is not None

    def require_deadline(self) -> None:
        if self.deadline is None:
            raise ContextTimeout("context deadline must be set")

    def remaining(self) -> float:
        """Seconds left before the deadline, never negative."""
        self.require_deadline()
        return max(0.0, self.deadline - self.clock())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and self.clock() >= self.deadline

    def check(self) -> None:
        self.require_deadline()
        if self.expired:
            raise ContextTimeout("context deadline exceeded")
