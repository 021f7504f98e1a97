"""
Operation contexts.

Every public operation takes an ``OperationContext`` as its first argument.
Long running steps call ``check()`` at each suspension point (manifest fetch,
blob transfer, streamed chunk) so that cancellation or an expired deadline
aborts the operation before it performs further side effects.
"""
from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import DeadlineExceeded, OperationCancelled

__all__ = ["OperationContext"]


class OperationContext:
    """
    Cancellation and deadline carrier.

    Contexts form a tree: cancelling a parent cancels every child, and a
    child's deadline is never later than its parent's.
    """

    def __init__(self, *, deadline: Optional[float] = None,
                 parent: Optional[OperationContext] = None):
        self._event = threading.Event()
        self._parent = parent
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

    @classmethod
    def background(cls) -> OperationContext:
        """Context that is never cancelled and has no deadline."""
        return cls()

    def with_timeout(self, seconds: float) -> OperationContext:
        """Derive a child context expiring ``seconds`` from now."""
        if seconds <= 0:
            raise ValueError(f"timeout must be positive, got {seconds}")
        return OperationContext(deadline=time.monotonic() + seconds, parent=self)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self) -> None:
        """
        Raise if the operation must stop.

        Raises:
            OperationCancelled: If this context or an ancestor was cancelled
            DeadlineExceeded: If the deadline has passed
        """
        if self.cancelled:
            raise OperationCancelled("operation cancelled")
        if self.expired:
            raise DeadlineExceeded("operation deadline exceeded")
