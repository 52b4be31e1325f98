from __future__ import annotations

from threading import Lock


class CounterRetiredError(RuntimeError):
    """Raised when an increment reaches a counter that eviction already removed."""


class Counter:
    def __init__(self, value: int = 0) -> None:
        self._lock = Lock()
        self._value = max(0, int(value))
        self._retired = False

    def add_and_get(self, cost: int) -> int:
        with self._lock:
            self._ensure_live()
            self._value += cost
            return self._value

    def add_and_get_with_ceiling(self, cost: int, ceiling: int, already_counted: int) -> int:
        """Add at most ``ceiling - already_counted - current`` and return the new value.

        When the current value already reaches ``ceiling - already_counted`` the
        counter is left untouched and the current value is returned.
        """
        with self._lock:
            self._ensure_live()
            room = ceiling - already_counted - self._value
            if room > 0:
                self._value += min(cost, room)
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value

    def set(self, value: int) -> None:
        with self._lock:
            self._value = max(0, int(value))

    def retire(self) -> None:
        with self._lock:
            self._retired = True

    def _ensure_live(self) -> None:
        if self._retired:
            raise CounterRetiredError("counter was evicted")
