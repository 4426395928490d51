"""Per-operation context: deadline + cancellation.

Every store, engine and manager operation takes an OpContext explicitly instead of
reading process-wide state, so concurrent callers (and tests) stay isolated.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from typing import Optional

from controlplane.errors import DeadlineExceeded, OperationCancelled


@dataclass(frozen=True)
class OpContext:
    # Absolute deadline on the time.monotonic() clock.
    deadline: Optional[float] = None
    cancel_event: Optional[threading.Event] = None

    @classmethod
    def background(cls) -> "OpContext":
        return cls()

    @classmethod
    def with_deadline_in(cls, seconds: float, *, cancel_event: Optional[threading.Event] = None) -> "OpContext":
        return cls(deadline=time.monotonic() + max(0.0, float(seconds)), cancel_event=cancel_event)

    def with_timeout(self, seconds: float) -> "OpContext":
        """Derive a context whose deadline is the earlier of ours and now+seconds."""
        candidate = time.monotonic() + max(0.0, float(seconds))
        if self.deadline is not None and self.deadline <= candidate:
            return self
        return replace(self, deadline=candidate)

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (never negative), or None without a deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check(self) -> None:
        """Raise if the operation should stop before its next round trip."""
        if self.cancelled:
            raise OperationCancelled("operation cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise DeadlineExceeded("operation deadline exceeded")
