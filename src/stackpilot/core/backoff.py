"""Additive-increase/multiplicative-decrease poll interval control.

Each long-running poll loop owns one Backoff instance. The interval grows
multiplicatively when the remote API throttles and decays additively back
towards the minimum while calls succeed.
"""

from typing import Optional


class Backoff:
    """AIMD poll interval controller.

    Intervals are expressed in seconds.
    """

    DEFAULT_MINIMUM_SECONDS = 1.0
    DEFAULT_MULTIPLIER = 2
    MAXIMUM_FACTOR = 128

    def __init__(self, minimum: Optional[float] = None,
                 maximum: Optional[float] = None,
                 multiplier: Optional[float] = None,
                 decrease: Optional[float] = None) -> None:
        """Initialize the controller.

        Args:
            minimum: Lower bound of the interval (default: 1 second)
            maximum: Upper bound of the interval (default: 128 x minimum)
            multiplier: Factor applied on error (default: 2)
            decrease: Seconds subtracted on success (default: minimum / 4)

        Raises:
            ValueError: When the bounds are inconsistent
        """
        self.minimum = minimum or self.DEFAULT_MINIMUM_SECONDS
        self.maximum = maximum or self.minimum * self.MAXIMUM_FACTOR
        self.multiplier = multiplier or self.DEFAULT_MULTIPLIER
        self.decrease = decrease or self.minimum / 4

        if self.minimum <= 0:
            raise ValueError("minimum interval must be positive")
        if self.maximum < self.minimum:
            raise ValueError("maximum interval must not be below minimum")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

        self._current = self.minimum

    def current(self) -> float:
        """Return the interval to wait before the next attempt."""
        return self._current

    def on_error(self) -> None:
        """Grow the interval after a throttled or failed attempt."""
        self._current = self._bound(self._current * self.multiplier)

    def on_success(self) -> None:
        """Shrink the interval after a successful attempt."""
        self._current = self._bound(self._current - self.decrease)

    def _bound(self, value: float) -> float:
        return min(max(value, self.minimum), self.maximum)

    def __repr__(self) -> str:
        return (
            f"Backoff(current={self._current}, minimum={self.minimum}, "
            f"maximum={self.maximum})"
        )
