"""Logging and telemetry for the chat-completion proxy.

Emits human-readable log lines prefixed with the request correlation id, and
one structured JSON record per completed request, to stdout and an
append-only log file.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("chatproxy")

_KEY_DISPLAY_LENGTH = 15


def setup_logging(log_file: str, level: int = logging.INFO) -> None:
    """Configure the proxy logger with stdout and file handlers.

    Args:
        log_file: Path to the append-only log file.
        level: Minimum level for both handlers.
    """
    logger.setLevel(level)

    if not logger.handlers:
        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(level)
        stdout_handler.setFormatter(fmt)
        logger.addHandler(stdout_handler)

        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setLevel(level)
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)


def mask_api_key(api_key: str) -> str:
    """Mask a credential for logging: first 15 characters then ``...``."""
    if len(api_key) > _KEY_DISPLAY_LENGTH:
        return "{}...".format(api_key[:_KEY_DISPLAY_LENGTH])
    return "****"


def log_request(
    *,
    request_id: str,
    model: Optional[str],
    stream: bool,
    outcome: str,
    status: int,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None,
    duplicate: bool = False
) -> None:
    """Log a single completed request as one JSON line.

    Args:
        request_id: Correlation id assigned by the router.
        model: The model the caller asked for (None if the body was unusable).
        stream: Whether the caller requested streaming.
        outcome: Short outcome label (e.g. "success", "upstream_error").
        status: HTTP status returned to the caller.
        duration_ms: Wall time spent in the handler.
        error: Error message if the request failed.
        duplicate: Whether duplicate detection flagged the request.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "model": model,
        "stream": stream,
        "outcome": outcome,
        "status": status,
    }

    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 1)

    if error:
        record["error"] = error

    if duplicate:
        record["duplicate"] = True

    logger.info(json.dumps(record))
