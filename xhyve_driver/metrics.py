"""Process-wide counters and gauges served on ``/metrics``."""

from collections import Counter
from threading import Lock


class Metrics:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._gauges: dict[str, int] = {}

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def set_gauges(self, prefix: str, values: dict[str, int]) -> None:
        """Replace every gauge under ``prefix`` with ``values``."""
        with self._lock:
            for key in [k for k in self._gauges if k.startswith(f"{prefix}_")]:
                del self._gauges[key]
            for name, value in values.items():
                self._gauges[f"{prefix}_{name}"] = value

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {**self._counters, **self._gauges}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()


metrics = Metrics()
