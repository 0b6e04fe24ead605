"""Translation between the public wire shape and the upstream wire shape.

Requests are close to a structural passthrough: both APIs share field names,
and unknown fields are forwarded so either side can evolve independently.
Responses are rebuilt so the caller always sees the model it asked for and
every required field is populated; a response that cannot satisfy that is
rejected instead of being forwarded half-populated.
"""

import time
import uuid
from typing import Any, Dict, List

from chatproxy.errors import ValidationError
from chatproxy.models import (
    ChatChoice,
    ChatRequest,
    ChatResponse,
    ResponseMessage,
    UsageInfo,
)


class TranslationError(Exception):
    """Raised when an upstream response cannot be turned into a valid reply."""


def generate_completion_id() -> str:
    return "chatcmpl-{}".format(uuid.uuid4().hex[:29])


def translate_request(request: ChatRequest, default_max_tokens: int = 0) -> Dict[str, Any]:
    """Convert a public chat request into the upstream payload.

    Args:
        request: The parsed inbound request.
        default_max_tokens: Applied when the caller sent no max_tokens;
            0 disables it.

    Returns:
        A JSON-serializable payload for the upstream chat endpoint.
    """
    payload = request.model_dump(exclude_none=True)
    payload["stream"] = request.stream
    if request.max_tokens is None and default_max_tokens > 0:
        payload["max_tokens"] = default_max_tokens
    return payload


def _has_content(message: Dict[str, Any]) -> bool:
    content = message.get("content")
    if isinstance(content, str):
        return bool(content.strip())
    if isinstance(content, list):
        return len(content) > 0
    return bool(message.get("tool_calls"))


def validate_translated_request(payload: Dict[str, Any]) -> None:
    """Reject payloads the upstream would refuse anyway.

    Raises:
        ValidationError: On a blank model, missing messages, empty message
            content, or sampling parameters out of range.
    """
    if not str(payload.get("model", "")).strip():
        raise ValidationError("Model cannot be empty", param="model")

    messages: List[Dict[str, Any]] = payload.get("messages") or []
    if not messages:
        raise ValidationError("Messages cannot be null or empty", param="messages")
    for index, message in enumerate(messages):
        if not str(message.get("role", "")).strip():
            raise ValidationError(
                "Message {} has no role".format(index), param="messages"
            )
        if message.get("role") != "assistant" and not _has_content(message):
            raise ValidationError(
                "Message {} has empty content".format(index), param="messages"
            )

    temperature = payload.get("temperature")
    if temperature is not None and not 0.0 <= temperature <= 2.0:
        raise ValidationError(
            "temperature must be between 0 and 2", param="temperature"
        )
    top_p = payload.get("top_p")
    if top_p is not None and not 0.0 <= top_p <= 1.0:
        raise ValidationError("top_p must be between 0 and 1", param="top_p")
    max_tokens = payload.get("max_tokens")
    if max_tokens is not None and max_tokens <= 0:
        raise ValidationError("max_tokens must be positive", param="max_tokens")


def _translate_choice(index: int, raw: Any) -> ChatChoice:
    if not isinstance(raw, dict):
        raise TranslationError("Choice {} is not an object".format(index))
    message_raw = raw.get("message") or {}
    if not isinstance(message_raw, dict):
        raise TranslationError("Choice {} has a malformed message".format(index))

    extra = {
        k: v for k, v in message_raw.items() if k not in ("role", "content")
    }
    message = ResponseMessage(
        role=message_raw.get("role") or "assistant",
        content=message_raw.get("content") or "",
        **extra,
    )
    return ChatChoice(
        index=raw.get("index", index),
        message=message,
        finish_reason=raw.get("finish_reason"),
    )


def translate_response(upstream: Dict[str, Any], original_model: str) -> ChatResponse:
    """Convert an upstream chat completion into the public response shape.

    The ``model`` field is rewritten to the model the caller requested,
    because the upstream may echo a provider-qualified or dated name.

    Args:
        upstream: Parsed upstream JSON body.
        original_model: The model string from the inbound request.

    Returns:
        A ChatResponse that passes validate_translated_response().

    Raises:
        TranslationError: If the result would be missing required fields.
    """
    raw_choices = upstream.get("choices") or []
    if not isinstance(raw_choices, list):
        raise TranslationError("Upstream 'choices' is not a list")

    created = upstream.get("created")
    if not isinstance(created, int):
        created = int(time.time())

    usage = None
    usage_raw = upstream.get("usage")
    if isinstance(usage_raw, dict):
        usage = UsageInfo(
            prompt_tokens=usage_raw.get("prompt_tokens") or 0,
            completion_tokens=usage_raw.get("completion_tokens") or 0,
            total_tokens=usage_raw.get("total_tokens") or 0,
        )

    response = ChatResponse(
        id=upstream.get("id") or generate_completion_id(),
        created=created,
        model=original_model,
        choices=[_translate_choice(i, c) for i, c in enumerate(raw_choices)],
        usage=usage,
    )

    if not validate_translated_response(response):
        raise TranslationError(
            "Translated response is missing required fields (choices: {})".format(
                len(response.choices)
            )
        )
    return response


def validate_translated_response(response: ChatResponse) -> bool:
    """Check the post-conditions every outgoing response must satisfy."""
    if not response.id or not response.id.strip():
        return False
    if response.object != "chat.completion" or response.created is None:
        return False
    if not response.model or not response.model.strip():
        return False
    if not response.choices:
        return False
    return all(
        choice.message is not None
        and bool(choice.message.role and choice.message.role.strip())
        for choice in response.choices
    )
