import time
import threading
from typing import Callable, Dict, Iterable, List, Optional


class CooldownTracker:
    """
    Tracks per-credential exclusion windows after rate-limit failures.

    Once a credential receives a quota/429 signal it is excluded from
    selection until its window passes. An expired entry is the same as no
    entry and is evicted the next time it is read.

    State is shared by every concurrent request in the process, so all
    access goes through one lock. Methods are synchronous and never block
    on I/O, which keeps them usable from threads and from the event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._cooldowns: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def mark_cooldown(self, name: str, duration: float) -> float:
        """
        Exclude a credential for `duration` seconds from now.
        The latest failure wins, even if it shortens an existing window.
        Returns the excluded-until timestamp.
        """
        with self._lock:
            until = self._clock() + duration
            self._cooldowns[name] = until
            return until

    def is_available(self, name: str, now: Optional[float] = None) -> bool:
        """Checks if a credential is outside any cooldown window."""
        now = self._now(now)
        with self._lock:
            until = self._cooldowns.get(name)
            if until is None:
                return True
            if until <= now:
                del self._cooldowns[name]
                return True
            return False

    def available_subset(
        self, names: Iterable[str], now: Optional[float] = None
    ) -> List[str]:
        """
        Filters `names` down to the currently available ones, preserving order.
        May return an empty list; callers decide what a full blackout means.
        """
        now = self._now(now)
        with self._lock:
            available = []
            for name in names:
                until = self._cooldowns.get(name)
                if until is not None and until <= now:
                    del self._cooldowns[name]
                    until = None
                if until is None:
                    available.append(name)
            return available

    def remaining(self, name: str, now: Optional[float] = None) -> float:
        """
        Returns the remaining cooldown time in seconds for a credential.
        Returns 0 if the credential is available.
        """
        now = self._now(now)
        with self._lock:
            until = self._cooldowns.get(name)
            if until is None:
                return 0.0
            return max(0.0, until - now)

    def snapshot(self, now: Optional[float] = None) -> Dict[str, float]:
        """Remaining seconds for every credential still cooling down."""
        now = self._now(now)
        with self._lock:
            expired = [name for name, until in self._cooldowns.items() if until <= now]
            for name in expired:
                del self._cooldowns[name]
            return {name: until - now for name, until in self._cooldowns.items()}

    def clear(self) -> None:
        with self._lock:
            self._cooldowns.clear()

    def __len__(self) -> int:
        return len(self.snapshot())
