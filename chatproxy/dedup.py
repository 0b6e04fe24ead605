"""Duplicate-request detection.

Some clients fire the same completion request twice in quick succession.
The deduplicator fingerprints each request body together with the caller's
address and flags repeats seen within a short window. Detection is advisory:
duplicates are logged and reported, never rejected.
"""

import hashlib
import threading
import time
from dataclasses import dataclass, field
from typing import Dict

from chatproxy.telemetry import logger


def fingerprint(body: bytes, remote_addr: str) -> str:
    """Return the SHA-256 hex digest of ``body|remote_addr``."""
    digest = hashlib.sha256()
    digest.update(body)
    digest.update(b"|")
    digest.update(remote_addr.encode("utf-8"))
    return digest.hexdigest()


@dataclass
class RequestDeduplicator:
    """Sliding-window fingerprint map.

    Entries older than twice the window are swept on every check, so the map
    only ever holds recent fingerprints without an explicit capacity limit.
    """

    window_seconds: float = 1.0
    _seen: Dict[str, float] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def check(self, body: bytes, remote_addr: str, request_id: str = "-") -> bool:
        """Record a request and report whether it repeats a recent one.

        Args:
            body: Raw request body.
            remote_addr: Caller address.
            request_id: Correlation id used in the log line.

        Returns:
            True if the same fingerprint was seen within the window.
        """
        key = fingerprint(body, remote_addr)
        now = time.time()

        with self._lock:
            last_seen = self._seen.get(key)
            duplicate = last_seen is not None and (now - last_seen) < self.window_seconds
            self._seen[key] = now

            horizon = self.window_seconds * 2
            expired = [k for k, seen in self._seen.items() if now - seen > horizon]
            for k in expired:
                del self._seen[k]

        if duplicate:
            logger.warning(
                "[%s] Potential duplicate request detected (hash: %s, "
                "time since last: %.0fms)",
                request_id,
                key[:16],
                (now - last_seen) * 1000,
            )
        return duplicate

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
