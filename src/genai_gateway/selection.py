import random
import threading
from typing import Optional, Sequence

from .credential_pool import Credential


class RoundRobinSelector:
    """
    Deterministic rotation over the pool order.

    Each selection takes the next value of a shared cursor and walks
    forward from that pool position to the first credential in the
    candidate set. With every credential available, N consecutive
    selections visit each of the N credentials exactly once, in order.
    """

    name = "round_robin"

    def __init__(self):
        self._cursor = 0
        self._lock = threading.Lock()

    def _next_cursor(self) -> int:
        with self._lock:
            cursor = self._cursor
            self._cursor += 1
            return cursor

    def select(
        self, pool: Sequence[Credential], candidates: Sequence[Credential]
    ) -> Credential:
        if not candidates:
            raise ValueError("Cannot select from an empty candidate set")
        candidate_names = {cred.name for cred in candidates}
        size = len(pool)
        start = self._next_cursor() % size
        for offset in range(size):
            cred = pool[(start + offset) % size]
            if cred.name in candidate_names:
                return cred
        # Candidates outside the pool order; should not happen, fall back to the first.
        return candidates[0]

    def reset(self) -> None:
        with self._lock:
            self._cursor = 0


class RandomSelector:
    """Uniform random choice among candidates."""

    name = "random"

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self._lock = threading.Lock()

    def select(
        self, pool: Sequence[Credential], candidates: Sequence[Credential]
    ) -> Credential:
        if not candidates:
            raise ValueError("Cannot select from an empty candidate set")
        with self._lock:
            return self._rng.choice(list(candidates))

    def reset(self) -> None:
        pass


def build_selector(policy: str, rng: Optional[random.Random] = None):
    if policy == "round_robin":
        return RoundRobinSelector()
    if policy == "random":
        return RandomSelector(rng)
    raise ValueError(f"Unknown selection policy: {policy}")
