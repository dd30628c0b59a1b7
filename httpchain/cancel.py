"""Cancellation and deadline handles for calls.

A CancelScope is attached to every Request. Cancelling it (from any thread)
or letting its deadline pass aborts the in-flight network call. The network
backend checks the scope around every socket operation, and callbacks
registered with on_cancel() wake operations blocked in another thread.

Usage:
    scope = CancelScope(timeout=5.0)
    request = Request(uri="/slow", cancel_scope=scope)
    # elsewhere: scope.cancel()
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from httpchain.errors import CallCancelled, CallTimeout


def _run_once(callback: Callable[[], None]) -> Callable[[], None]:
    lock = threading.Lock()
    done = False

    def run() -> None:
        nonlocal done
        with lock:
            if done:
                return
            done = True
        callback()

    return run


class CancelScope:
    """Cancellation flag plus an optional absolute deadline.

    Scopes form a tree: a child created with with_timeout() is cancelled
    whenever its parent is, and its deadline never exceeds the parent's.
    """

    def __init__(
        self,
        timeout: float | None = None,
        parent: CancelScope | None = None,
    ) -> None:
        """Initialize the scope.

        Args:
            timeout: Seconds from now until the deadline. None means unbounded.
            parent: Optional parent scope whose cancellation and deadline apply.
        """
        if timeout is not None and timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {timeout}")
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._reason = "call cancelled"
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    @classmethod
    def background(cls) -> CancelScope:
        """Return a new scope that is never cancelled unless cancel() is called."""
        return cls()

    def with_timeout(self, timeout: float | None) -> CancelScope:
        """Return a child scope bounded by *timeout* seconds (None = parent's bound)."""
        return CancelScope(timeout=timeout, parent=self)

    def cancel(self, reason: str = "call cancelled") -> None:
        with self._lock:
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run *callback* once when this scope or any parent is cancelled.

        The callback runs in the thread that calls cancel(), or right away if
        the scope is already cancelled. Deadlines do not trigger it.

        Returns:
            A function that unregisters the callback.
        """
        run = _run_once(callback)
        scopes: list[CancelScope] = []
        scope: CancelScope | None = self
        while scope is not None:
            scopes.append(scope)
            scope = scope._parent
        for scope in scopes:
            with scope._lock:
                scope._callbacks.append(run)

        def remove() -> None:
            for registered in scopes:
                with registered._lock:
                    if run in registered._callbacks:
                        registered._callbacks.remove(run)

        if self.cancelled:
            run()
        return remove

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str:
        if not self._event.is_set() and self._parent is not None:
            return self._parent.reason
        return self._reason

    @property
    def deadline(self) -> float | None:
        """Absolute monotonic deadline, the earliest along the parent chain."""
        parent_deadline = self._parent.deadline if self._parent is not None else None
        if self._deadline is None:
            return parent_deadline
        if parent_deadline is None:
            return self._deadline
        return min(self._deadline, parent_deadline)

    def remaining(self) -> float | None:
        """Seconds left until the deadline (never negative), or None if unbounded."""
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        deadline = self.deadline
        return deadline is not None and time.monotonic() >= deadline

    def check(self) -> None:
        """Raise if the scope is cancelled or past its deadline.

        Raises:
            CallCancelled: If cancel() was called on this scope or a parent.
            CallTimeout: If the deadline has passed.
        """
        if self.cancelled:
            raise CallCancelled(self.reason)
        if self.expired:
            raise CallTimeout("call deadline exceeded")

    def bound(self, timeout: float | None) -> float | None:
        """Clamp an operation timeout to the time left in the scope.

        Checks the scope first, so a cancelled or expired scope raises instead
        of returning a zero timeout.
        """
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)
