"""Per-account streaks of cycles that ended without a usable capture."""

from __future__ import annotations

import threading


class ConsecutiveFailureTracker:
    """Thread-safe username -> consecutive non-capture count."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, int] = {}

    def get(self, username: str) -> int:
        with self._lock:
            return self._counts.get(username, 0)

    def increment(self, username: str) -> int:
        with self._lock:
            count = self._counts.get(username, 0) + 1
            self._counts[username] = count
            return count

    def reset(self, username: str) -> None:
        with self._lock:
            self._counts[username] = 0

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)
