"""Cancellation scopes and thread task groups.

A CancelScope is passed through every blocking call in the engine. Poll
loops wait on the scope instead of sleeping so that an operator interrupt,
a deadline or a failing sibling loop unblocks them immediately.
"""

import logging
import threading
import time
from typing import Any, Callable, List, Optional, Type


logger = logging.getLogger(__name__)


class OperationCancelled(Exception):
    """Raised when an operation is cancelled before it completes."""
    pass


class DeadlineExceeded(OperationCancelled):
    """Raised when an operation runs past its deadline."""
    pass


class CancelScope:
    """Cancellation token with an optional deadline.

    Child scopes are cancelled together with their parent, but cancelling
    a child never affects the parent. A child leaves its parent once it is
    cancelled or closed.
    """

    def __init__(self, timeout: Optional[float] = None,
                 parent: Optional["CancelScope"] = None) -> None:
        """Initialize the scope.

        Args:
            timeout: Seconds until the scope cancels itself (None or 0 for no deadline)
            parent: Optional parent scope whose cancellation propagates here
        """
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List["CancelScope"] = []
        self._reason = ""
        self._error_class: Type[OperationCancelled] = OperationCancelled
        self._deadline: Optional[float] = None
        self._parent: Optional["CancelScope"] = None

        if timeout:
            self._deadline = time.monotonic() + timeout
        if parent is not None:
            if parent._deadline is not None:
                if self._deadline is None or parent._deadline < self._deadline:
                    self._deadline = parent._deadline
            self._parent = parent
            parent._attach(self)

    def _attach(self, child: "CancelScope") -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
            reason, error_class = self._reason, self._error_class
        child.cancel(reason, error_class)

    def _detach(self, child: "CancelScope") -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    def child(self, timeout: Optional[float] = None) -> "CancelScope":
        """Create a scope that is cancelled whenever this one is."""
        return CancelScope(timeout=timeout, parent=self)

    def cancel(self, reason: str = "operation cancelled",
               error_class: Type[OperationCancelled] = OperationCancelled) -> bool:
        """Cancel the scope and all of its children.

        Args:
            reason: Human readable cause, reported by raise_if_cancelled
            error_class: Exception type reported by raise_if_cancelled

        Returns:
            True if this call cancelled the scope, False if it already was
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._error_class = error_class
            self._event.set()
            children = list(self._children)
            self._children.clear()
        self.close()
        logger.debug(f"Scope cancelled: {reason}")
        for child in children:
            child.cancel(reason, error_class)
        return True

    def close(self) -> None:
        """Detach the scope from its parent once it is no longer in use."""
        parent, self._parent = self._parent, None
        if parent is not None:
            parent._detach(self)

    def _check_deadline(self) -> None:
        if self._deadline is not None and not self._event.is_set():
            if time.monotonic() >= self._deadline:
                self.cancel("deadline exceeded", DeadlineExceeded)

    @property
    def cancelled(self) -> bool:
        """Whether the scope has been cancelled or its deadline has passed."""
        self._check_deadline()
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def deadline_exceeded(self) -> bool:
        return self.cancelled and issubclass(self._error_class, DeadlineExceeded)

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def sleep(self, seconds: float) -> bool:
        """Wait for up to ``seconds`` or until the scope is cancelled.

        Args:
            seconds: Maximum time to wait

        Returns:
            True if the scope is cancelled, False if the full wait elapsed
        """
        timeout = seconds
        remaining = self.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        if self._event.wait(max(0.0, timeout)):
            return True
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        """Raise the cancellation error if the scope is cancelled.

        Raises:
            OperationCancelled: When the scope was cancelled
            DeadlineExceeded: When the scope's deadline has passed
        """
        if self.cancelled:
            raise self.error()

    def error(self) -> OperationCancelled:
        """Build the exception describing why the scope was cancelled."""
        return self._error_class(self._reason or "operation cancelled")


class TaskGroup:
    """Run callables on threads that share one cancellation scope.

    The first callable to raise cancels the group's scope, which signals
    every sibling to stop. ``wait`` returns once all of them have exited.
    """

    JOIN_INTERVAL_SECONDS = 0.2

    def __init__(self, scope: CancelScope, name: str = "task") -> None:
        self.scope = scope.child()
        self.name = name
        self._threads: List[threading.Thread] = []
        self._errors: List[Exception] = []
        self._lock = threading.Lock()

    def spawn(self, name: str, func: Callable[..., Any], *args: Any) -> threading.Thread:
        """Start ``func(*args)`` on a new thread inside the group."""
        def runner() -> None:
            try:
                func(*args)
            except Exception as e:
                with self._lock:
                    self._errors.append(e)
                logger.debug(f"{self.name}/{name} failed: {e}")
                self.scope.cancel(f"{name} failed: {e}")

        thread = threading.Thread(
            target=runner, name=f"{self.name}-{name}", daemon=True
        )
        self._threads.append(thread)
        thread.start()
        return thread

    def wait(self) -> None:
        """Join every thread and re-raise the first failure, if any."""
        for thread in self._threads:
            while thread.is_alive():
                thread.join(self.JOIN_INTERVAL_SECONDS)
        self.scope.close()
        if self._errors:
            raise self._errors[0]

    @property
    def errors(self) -> List[Exception]:
        with self._lock:
            return list(self._errors)
