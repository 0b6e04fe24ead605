"""Upstream error classification and user-facing message synthesis.

Upstream error bodies are free text, not a versioned schema, so this module
is a best-effort heuristic layer: it recognizes the failure patterns the
aggregator is known to produce and turns them into actionable messages,
falling back to the upstream's own message when nothing matches. The
matching rules live here so both pipelines share them.

Precedence:
1. Capability mismatch (model cannot accept image/audio/video/file input)
2. Free period ended / migrate to paid slug
3. "No endpoints found for <model>" (true unavailability, notifies the user)
4. HTTP status fallback (401, 402, 429, 5xx)
5. The extracted upstream message, unchanged
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from chatproxy.errors import ErrorKind
from chatproxy.notifier import NotificationSink
from chatproxy.telemetry import logger

MODELS_PAGE = "https://openrouter.ai/models"
STATUS_PAGE = "https://status.openrouter.ai"

VISION_MODELS = [
    "openai/gpt-4o",
    "openai/gpt-4o-mini",
    "anthropic/claude-4.5-sonnet",
    "google/gemini-2.5-pro",
]

AUDIO_MODELS = [
    "openai/gpt-4o-audio-preview",
    "google/gemini-2.0-flash-exp",
    "google/gemini-2.5-pro",
]

VIDEO_MODELS = [
    "google/gemini-2.0-flash-exp",
    "google/gemini-2.5-pro",
    "openai/gpt-4o (for video frames)",
]

FILE_MODELS = [
    "google/gemini-2.5-pro",
    "anthropic/claude-4.5-sonnet",
    "openai/gpt-4o",
]

GENERAL_MODELS = [
    "openai/gpt-4o-mini (fast, affordable)",
    "anthropic/claude-3.5-sonnet (high quality)",
    "google/gemini-pro-1.5 (large context)",
]

# (modality, patterns, message header, suggestion header, suggestions)
_CAPABILITY_RULES = [
    (
        "image",
        ("support image input",),
        "This model doesn't support image input.",
        "Try a vision-capable model like:",
        VISION_MODELS,
    ),
    (
        "audio",
        ("support audio input", "audio not supported"),
        "This model doesn't support audio input.",
        "Try an audio-capable model like:",
        AUDIO_MODELS,
    ),
    (
        "video",
        ("support video input", "video not supported"),
        "This model doesn't support video input.",
        "Try a video-capable model like:",
        VIDEO_MODELS,
    ),
    (
        "file",
        ("support pdf", "support file", "pdf not supported", "file not supported"),
        "This model doesn't support PDF/file input.",
        "Try a document-capable model like:",
        FILE_MODELS,
    ),
]

_NO_ENDPOINTS = "no endpoints found"
_NO_ENDPOINTS_MODEL = re.compile(r"No endpoints found for ([^\s\"]+)", re.IGNORECASE)
_PAID_SLUG = re.compile(r"migrate to the paid slug[:\s]+([^\s\"]+)", re.IGNORECASE)

RULE_CAPABILITY = "capability"
RULE_FREE_TIER = "free_tier"
RULE_NO_ENDPOINTS = "no_endpoints"
RULE_STATUS = "status"
RULE_PASSTHROUGH = "passthrough"


@dataclass
class UpstreamError:
    """A non-2xx upstream reply, consumed immediately by classify()."""

    status_code: int
    raw_body: str


@dataclass
class ClassifiedError:
    """Outcome of classifying an upstream failure."""

    kind: ErrorKind
    user_message: str
    suggested_models: List[str] = field(default_factory=list)
    status_code: Optional[int] = None
    rule: str = RULE_PASSTHROUGH


def format_suggestions(header: str, models: List[str]) -> str:
    """Render a suggestion header followed by a bulleted model list."""
    return "{}\n{}".format(header, "\n".join("- {}".format(m) for m in models))


def extract_upstream_message(raw_body: str) -> Optional[str]:
    """Pull ``error.message`` out of a JSON error body, if there is one."""
    try:
        data: Any = json.loads(raw_body)
    except (ValueError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    elif isinstance(error, str) and error:
        return error
    return None


def _classify_capability(body: str) -> Optional[ClassifiedError]:
    lowered = body.lower()
    for _modality, patterns, header, suggestion_header, models in _CAPABILITY_RULES:
        if any(p in lowered for p in patterns):
            message = "{}\n\n{}\n\nCheck model capabilities: {}".format(
                header, format_suggestions(suggestion_header, models), MODELS_PAGE
            )
            return ClassifiedError(
                kind=ErrorKind.UNSUPPORTED_CAPABILITY,
                user_message=message,
                suggested_models=list(models),
                rule=RULE_CAPABILITY,
            )
    return None


def is_free_tier_ended(body: str) -> bool:
    lowered = body.lower()
    return "free" in lowered and (
        "period has ended" in lowered
        or "migrate to" in lowered
        or "paid slug" in lowered
    )


def _free_tier_message(paid_slug: Optional[str]) -> str:
    lines = [
        "Free Tier Ended",
        "",
        "The free period for this model has ended.",
        "",
    ]
    if paid_slug:
        lines.append(
            "To continue using this model, switch to the paid version: `{}`".format(
                paid_slug
            )
        )
        lines.append("")
    lines.extend(
        [
            "Alternatives:",
            "- Select a different model",
            "- Use another free model if available",
            "- Add credits to your account for paid models",
        ]
    )
    return "\n".join(lines)


def _model_unavailable_message(model_name: str) -> str:
    return "Model Unavailable: {}\n\n{}\n\nCheck model status: {}".format(
        model_name,
        format_suggestions(
            "This model is currently unavailable. Try:", GENERAL_MODELS
        ),
        MODELS_PAGE,
    )


def _rate_limit_message(extracted: Optional[str]) -> str:
    message = "Rate limit exceeded. Please wait a moment and try again."
    if extracted and "free" in extracted.lower():
        message += (
            "\n\nTip: Free tier models have lower rate limits. "
            "Consider using a paid model for higher limits."
        )
    return message


def _server_error_message(extracted: Optional[str], status_code: int) -> str:
    message = "Upstream server error (HTTP {}).\n\n".format(status_code)
    if extracted:
        message += "Details: {}\n\n".format(extracted)
    message += (
        "This is usually a temporary issue. Please try again in a moment.\n"
        "If the problem persists, check the status page: {}".format(STATUS_PAGE)
    )
    return message


def _classify_status(status_code: int, extracted: Optional[str]) -> Optional[ClassifiedError]:
    if status_code == 401:
        message = (
            "Authentication failed: {}".format(extracted)
            if extracted
            else "Authentication failed. Please check your API key."
        )
        return ClassifiedError(ErrorKind.AUTH, message, status_code=status_code, rule=RULE_STATUS)
    if status_code == 402:
        message = (
            "Insufficient credits: {}".format(extracted)
            if extracted
            else "Insufficient credits. Please add credits to your account."
        )
        return ClassifiedError(ErrorKind.QUOTA, message, status_code=status_code, rule=RULE_STATUS)
    if status_code == 429:
        return ClassifiedError(
            ErrorKind.RATE_LIMIT,
            _rate_limit_message(extracted),
            status_code=status_code,
            rule=RULE_STATUS,
        )
    if status_code >= 500:
        kind = ErrorKind.INTERNAL if status_code == 500 else ErrorKind.NETWORK
        return ClassifiedError(
            kind,
            _server_error_message(extracted, status_code),
            status_code=status_code,
            rule=RULE_STATUS,
        )
    return None


def classify(
    error: UpstreamError,
    notifier: Optional[NotificationSink] = None,
    request_id: str = "-",
) -> ClassifiedError:
    """Classify an upstream failure into a kind and a user-facing message.

    Args:
        error: Status code and raw body of the upstream reply.
        notifier: Sink told about true model unavailability. It throttles
            repeats itself, so it is called unconditionally.
        request_id: Correlation id carried into log lines and notifications.

    Returns:
        The ClassifiedError. Never raises on odd bodies.
    """
    body = error.raw_body or ""
    extracted = extract_upstream_message(body)

    classified = _classify_capability(body)
    if classified is not None:
        classified.status_code = error.status_code
        return classified

    if is_free_tier_ended(body):
        match = _PAID_SLUG.search(body)
        paid_slug = match.group(1).rstrip(".") if match else None
        if notifier is not None:
            notifier.notify_model_unavailable(
                paid_slug or "the requested model", body, request_id
            )
        return ClassifiedError(
            kind=ErrorKind.MODEL_UNAVAILABLE,
            user_message=_free_tier_message(paid_slug),
            suggested_models=[paid_slug] if paid_slug else [],
            status_code=error.status_code,
            rule=RULE_FREE_TIER,
        )

    if _NO_ENDPOINTS in body.lower():
        match = _NO_ENDPOINTS_MODEL.search(body)
        model_name = match.group(1).rstrip(".") if match else "the requested model"
        if notifier is not None:
            notifier.notify_model_unavailable(model_name, body, request_id)
        return ClassifiedError(
            kind=ErrorKind.MODEL_UNAVAILABLE,
            user_message=_model_unavailable_message(model_name),
            suggested_models=[m.split(" ")[0] for m in GENERAL_MODELS],
            status_code=error.status_code,
            rule=RULE_NO_ENDPOINTS,
        )

    classified = _classify_status(error.status_code, extracted)
    if classified is not None:
        return classified

    if 400 <= error.status_code < 500:
        kind = ErrorKind.VALIDATION
    else:
        kind = ErrorKind.INTERNAL
    if extracted:
        message = extracted
    else:
        message = "Request failed (HTTP {}). Please try again.".format(error.status_code)
        logger.debug("[%s] Unrecognized upstream error body: %s", request_id, body[:500])
    return ClassifiedError(kind, message, status_code=error.status_code, rule=RULE_PASSTHROUGH)


def enhance_stream_error_message(message: str) -> str:
    """Make generic mid-stream provider errors more helpful.

    Applied only to messages the classifier passed through unchanged.
    """
    lowered = message.lower()
    if lowered == "provider returned error" or ("provider" in lowered and "error" in lowered):
        return (
            "The model provider encountered an error.\n\n"
            "This is usually a temporary issue. Try:\n"
            "- Waiting a moment and trying again\n"
            "- Switching to a different model\n"
            "- Using a non-free model if available"
        )
    if "rate limit" in lowered or "too many requests" in lowered:
        return (
            "Rate limit exceeded.\n\n"
            "Please wait a moment before trying again.\n"
            "Free models have lower rate limits."
        )
    if "timeout" in lowered or "timed out" in lowered:
        return (
            "Request timed out.\n\n"
            "The model took too long to respond. Try:\n"
            "- Sending a shorter message\n"
            "- Using a faster model"
        )
    if "unavailable" in lowered or _NO_ENDPOINTS in lowered:
        return (
            "Model temporarily unavailable.\n\n"
            "Please try a different model or wait a moment."
        )
    return message


def extract_error_from_content(content: str) -> Optional[str]:
    """Find an error message in a non-SSE upstream body.

    Tries a JSON error object first, then common error phrases. Short
    content is returned as-is since it is most likely an error message.
    """
    extracted = extract_upstream_message(content)
    if extracted:
        return extracted

    lowered = content.lower()
    if "rate limit" in lowered:
        return "Rate limit exceeded. Please try again later."
    if "unauthorized" in lowered:
        return "Authentication failed. Please check your API key."
    if "not found" in lowered:
        return "Model or endpoint not found."
    if "unavailable" in lowered:
        return "Service temporarily unavailable."
    if "timeout" in lowered:
        return "Request timed out."
    if len(content) < 200:
        return content
    return None
