"""Single-shot (non-streaming) chat completion against the upstream."""

from typing import Any, Dict, Optional

import httpx

from chatproxy.classifier import UpstreamError, classify
from chatproxy.errors import InternalError, NetworkError, error_from_classified
from chatproxy.models import ChatResponse
from chatproxy.notifier import NotificationSink
from chatproxy.telemetry import logger
from chatproxy.translator import TranslationError, translate_response
from chatproxy.upstream import UpstreamClient


async def complete(
    upstream: UpstreamClient,
    payload: Dict[str, Any],
    credential: str,
    requested_model: str,
    request_id: str,
    notifier: Optional[NotificationSink] = None,
) -> ChatResponse:
    """Issue one upstream call and translate the result.

    Args:
        upstream: Shared upstream client.
        payload: Translated request payload.
        credential: Upstream credential from the credential store.
        requested_model: Model string the caller sent; echoed in the reply.
        request_id: Correlation id for log lines.
        notifier: Sink for model-unavailability notifications.

    Returns:
        The translated ChatResponse.

    Raises:
        ProxyError: A subclass matching the failure. Upstream error statuses
            are preserved; parse and translation failures are InternalError.
    """
    try:
        response = await upstream.post_chat(payload, credential)
    except httpx.TimeoutException as exc:
        logger.error("[%s] Upstream request timed out: %s", request_id, exc)
        raise NetworkError(
            "Request timed out waiting for the model to respond.",
            status_code=408,
            code="timeout",
            error_type="timeout_error",
        ) from exc
    except httpx.TransportError as exc:
        logger.error("[%s] Network error calling upstream: %s", request_id, exc)
        raise NetworkError(
            "Network error communicating with upstream: {}".format(exc)
        ) from exc

    if not response.is_success:
        logger.error(
            "[%s] Upstream returned HTTP %d: %s",
            request_id,
            response.status_code,
            response.text[:500],
        )
        classified = classify(
            UpstreamError(response.status_code, response.text), notifier, request_id
        )
        raise error_from_classified(classified)

    try:
        data = response.json()
    except ValueError as exc:
        logger.error("[%s] Upstream body is not valid JSON", request_id)
        raise InternalError("Failed to parse response from upstream") from exc

    if not isinstance(data, dict):
        raise InternalError("Unexpected response format from upstream")

    try:
        translated = translate_response(data, requested_model)
    except (TranslationError, ValueError) as exc:
        logger.error("[%s] Response translation failed: %s", request_id, exc)
        raise InternalError("Invalid response from upstream: {}".format(exc)) from exc

    logger.info(
        "[%s] Completion received (%d choice(s))", request_id, len(translated.choices)
    )
    return translated
