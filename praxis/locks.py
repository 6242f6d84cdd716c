import time
from typing import Callable, Dict


class EventLockStore:
    """First-writer-wins locks keyed by event id, expiring after ``ttl`` seconds.

    Used to drop duplicate deliveries of the same HTTP request id.
    """

    def __init__(self, ttl: float = 600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._locks: Dict[str, float] = {}

    def acquire(self, event_id: str) -> bool:
        now = self._clock()
        self._purge(now)
        if event_id in self._locks:
            return False
        self._locks[event_id] = now
        return True

    def _purge(self, now: float) -> None:
        expired = [k for k, t in self._locks.items() if now - t >= self.ttl]
        for k in expired:
            del self._locks[k]

    def __len__(self) -> int:
        return len(self._locks)
