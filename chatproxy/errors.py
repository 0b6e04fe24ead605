"""Error taxonomy for the proxy.

Every failure the proxy reports to a client is a ProxyError subclass. The
non-streaming path serializes it as ``{"error": {...}}`` with the matching
HTTP status; the streaming path only uses its message.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

from chatproxy.models import ErrorDetail, ErrorResponse

if TYPE_CHECKING:
    from chatproxy.classifier import ClassifiedError


class ErrorKind(str, Enum):
    """Category of a failure, independent of how it is delivered."""

    AUTH = "auth"
    QUOTA = "quota"
    RATE_LIMIT = "rate_limit"
    MODEL_UNAVAILABLE = "model_unavailable"
    UNSUPPORTED_CAPABILITY = "unsupported_capability"
    VALIDATION = "validation"
    NETWORK = "network"
    INTERNAL = "internal"


# Public API "type" values per kind.
_ERROR_TYPES: Dict[ErrorKind, str] = {
    ErrorKind.AUTH: "authentication_error",
    ErrorKind.QUOTA: "insufficient_quota",
    ErrorKind.RATE_LIMIT: "rate_limit_error",
    ErrorKind.MODEL_UNAVAILABLE: "invalid_request_error",
    ErrorKind.UNSUPPORTED_CAPABILITY: "invalid_request_error",
    ErrorKind.VALIDATION: "invalid_request_error",
    ErrorKind.NETWORK: "service_unavailable",
    ErrorKind.INTERNAL: "internal_error",
}


class ProxyError(Exception):
    """Base class for errors returned to the caller."""

    kind = ErrorKind.INTERNAL
    default_status = 500
    default_code = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[Union[str, int]] = None,
        param: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        self.message = message
        self.status_code = status_code or self.default_status
        self.code = code if code is not None else self.default_code
        self.param = param
        self.error_type = error_type or _ERROR_TYPES[self.kind]
        super().__init__(message)

    def to_body(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Serialize to the public error envelope."""
        response = ErrorResponse(
            error=ErrorDetail(
                message=self.message,
                type=self.error_type,
                code=self.code,
                param=self.param,
                request_id=request_id,
            )
        )
        return response.model_dump(exclude_none=True)


class ValidationError(ProxyError):
    """Malformed JSON or missing/invalid request fields."""

    kind = ErrorKind.VALIDATION
    default_status = 400
    default_code = "invalid_request"


class AuthenticationError(ProxyError):
    """Missing bearer header or no configured upstream credential."""

    kind = ErrorKind.AUTH
    default_status = 401
    default_code = "invalid_api_key"


class QuotaError(ProxyError):
    kind = ErrorKind.QUOTA
    default_status = 402
    default_code = "insufficient_quota"


class RateLimitError(ProxyError):
    kind = ErrorKind.RATE_LIMIT
    default_status = 429
    default_code = "rate_limit_exceeded"


class UnsupportedCapabilityError(ProxyError):
    """The target model cannot accept a content modality in the request."""

    kind = ErrorKind.UNSUPPORTED_CAPABILITY
    default_status = 400
    default_code = "model_capability_error"


class ModelUnavailableError(ProxyError):
    kind = ErrorKind.MODEL_UNAVAILABLE
    default_status = 404
    default_code = "model_not_available"


class NetworkError(ProxyError):
    """Connect/read/write failure or timeout talking to the upstream."""

    kind = ErrorKind.NETWORK
    default_status = 503
    default_code = "network_error"


class InternalError(ProxyError):
    """Translation post-condition failure or unexpected exception."""

    kind = ErrorKind.INTERNAL
    default_status = 500
    default_code = "internal_error"


_ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (
        ValidationError,
        AuthenticationError,
        QuotaError,
        RateLimitError,
        UnsupportedCapabilityError,
        ModelUnavailableError,
        NetworkError,
        InternalError,
    )
}


def error_from_classified(classified: "ClassifiedError") -> ProxyError:
    """Build the ProxyError subclass matching a classified upstream failure.

    The upstream status code is kept when it is an error status so the
    caller sees the same code the aggregator returned.
    """
    cls = _ERRORS_BY_KIND[classified.kind]
    status_code = classified.status_code
    if status_code is not None and status_code < 400:
        status_code = None
    return cls(classified.user_message, status_code=status_code)
