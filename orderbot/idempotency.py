import threading
import time
from typing import Callable, Dict


class ProcessedMessageLog:
    """
    Process-local record of provider message ids already taken for processing.

    - Fixed TTL per id (expires ttl_seconds after it was taken).
    - begin() checks and records in one step, so two concurrent deliveries of the
      same id cannot both be processed.
    - forget() releases an id whose processing failed, so the provider's retry is
      processed again.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._expires: Dict[str, float] = {}

    def begin(self, message_id: str) -> bool:
        """
        Return True if message_id is new (and record it), False if it was seen within TTL.
        Empty ids are never deduplicated.
        """
        if not message_id:
            return True
        now = self._clock()
        with self._lock:
            expires_at = self._expires.get(message_id)
            if expires_at is not None and expires_at > now:
                return False
            self._expires[message_id] = now + self.ttl_seconds
            return True

    def forget(self, message_id: str) -> None:
        if not message_id:
            return
        with self._lock:
            self._expires.pop(message_id, None)

    def sweep_expired(self) -> int:
        """
        Drop ids whose TTL has passed. Returns how many were removed.
        """
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._expires.items() if v <= now]
            for k in expired:
                del self._expires[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._expires)
