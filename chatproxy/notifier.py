"""User-visible notifications about models that stopped being available.

The classifier calls the sink every time it sees a true unavailability; the
sink is responsible for not repeating itself.
"""

import threading
import time
from typing import Protocol, Set

from chatproxy.telemetry import logger


class NotificationSink(Protocol):
    def notify_model_unavailable(
        self, model_id: str, raw_detail: str, request_id: str = "-"
    ) -> None:
        ...


def extract_unavailability_reason(detail: str) -> str:
    """Summarize why a model is unavailable from the upstream error text."""
    lowered = detail.lower()
    if "deprecated" in lowered:
        return "Model has been deprecated"
    if "period has ended" in lowered or "migrate to" in lowered:
        return "Free period has ended - migrate to paid version"
    if "free" in lowered:
        return "Free tier temporarily unavailable"
    if "providers" in lowered:
        return "All providers are currently down"
    return "No endpoints available"


class LoggingNotifier:
    """Notification sink that reports through the proxy log.

    Each model is reported at most once per throttle window. When the window
    elapses the whole history is cleared, so a model that is still down gets
    reported again.
    """

    def __init__(self, throttle_seconds: float = 3600.0) -> None:
        self.throttle_seconds = throttle_seconds
        self._notified: Set[str] = set()
        self._window_start = time.time()
        self._lock = threading.Lock()

    def notify_model_unavailable(
        self, model_id: str, raw_detail: str, request_id: str = "-"
    ) -> None:
        now = time.time()
        with self._lock:
            if now - self._window_start > self.throttle_seconds:
                self._notified.clear()
                self._window_start = now

            if model_id in self._notified:
                logger.debug(
                    "[%s] Skipping duplicate notification for model: %s", request_id, model_id
                )
                return
            self._notified.add(model_id)

        logger.warning(
            "[%s] Model Unavailable: %s (%s). See available models at "
            "https://openrouter.ai/models",
            request_id,
            model_id,
            extract_unavailability_reason(raw_detail),
        )

    def has_notified(self, model_id: str) -> bool:
        with self._lock:
            return model_id in self._notified

    def clear(self) -> None:
        with self._lock:
            self._notified.clear()
            self._window_start = time.time()
