from __future__ import annotations

import time
from threading import Lock
from typing import Dict

from settings import SETTINGS


class ProcessedMessageRegistry:
    def __init__(self, ttl_seconds: int | None = None) -> None:
        self.ttl_seconds = ttl_seconds or SETTINGS.processed_message_ttl_seconds
        self._seen: Dict[str, float] = {}
        self._lock = Lock()

    def mark_if_new(self, message_id: str) -> bool:
        """Record ``message_id``; False when it was already seen within the TTL."""
        now = time.monotonic()
        with self._lock:
            seen_at = self._seen.get(message_id)
            if seen_at is not None and now - seen_at < self.ttl_seconds:
                return False
            self._seen[message_id] = now
            return True

    def purge_expired(self) -> int:
        now = time.monotonic()
        with self._lock:
            stale = [mid for mid, ts in self._seen.items() if now - ts >= self.ttl_seconds]
            for mid in stale:
                self._seen.pop(mid, None)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
