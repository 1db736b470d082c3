"""At-most-one in-flight computation helpers.

SingleFlight deduplicates concurrent calls for the same key: the first
caller runs the function while later callers wait for and share its
outcome. Failures are shared with the callers that were waiting but are
never remembered, so the next call tries again.
"""

import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar


T = TypeVar("T")


class SingleFlight:
    """Keyed deduplication of concurrent calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: Dict[Hashable, Future] = {}

    def do(self, key: Hashable, func: Callable[[], T]) -> T:
        """Run ``func`` unless a call for ``key`` is already running.

        Args:
            key: Deduplication key
            func: Computation to run

        Returns:
            The value computed by whichever caller ran ``func``

        Raises:
            BaseException: Whatever ``func`` raised, for every waiting caller
        """
        with self._lock:
            future = self._in_flight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._in_flight[key] = future

        if not leader:
            return future.result()

        try:
            value = func()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(value)
            return value
        finally:
            with self._lock:
                self._in_flight.pop(key, None)


class OnceValue(Generic[T]):
    """Lazily computed value that is cached once computed successfully."""

    _UNSET = object()

    def __init__(self) -> None:
        self._value: Any = self._UNSET
        self._flight = SingleFlight()

    def get(self, func: Callable[[], T]) -> T:
        value = self._value
        if value is not self._UNSET:
            return value

        def compute() -> T:
            if self._value is not self._UNSET:
                return self._value
            result = func()
            self._value = result
            return result

        return self._flight.do(None, compute)

    @property
    def value(self) -> Optional[T]:
        """The cached value, or None when nothing has been computed yet."""
        if self._value is self._UNSET:
            return None
        return self._value
