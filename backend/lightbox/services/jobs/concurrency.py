import threading
from typing import Optional

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 100


def validate_concurrency(value: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError("concurrency must be an integer")
    if not MIN_CONCURRENCY <= value <= MAX_CONCURRENCY:
        raise ValueError(f"concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}")
    return value


class ConcurrencyLimiter:
    """Counting semaphore whose capacity can be changed while permits are held.

    Lowering the limit never revokes running permits; new acquisitions wait
    until the active count drops below the new limit.
    """

    def __init__(self, limit: int):
        self._limit = validate_concurrency(limit)
        self._active = 0
        self._cond = threading.Condition()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    def acquire(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            if not self._cond.wait_for(lambda: self._active < self._limit, timeout):
                return False
            self._active += 1
            return True

    def release(self) -> None:
        with self._cond:
            if self._active <= 0:
                raise RuntimeError("release without acquire")
            self._active -= 1
            self._cond.notify_all()

    def set_limit(self, limit: int) -> None:
        limit = validate_concurrency(limit)
        with self._cond:
            self._limit = limit
            self._cond.notify_all()
