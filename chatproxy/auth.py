"""Inbound authentication for the proxy.

Transport-level auth is decoupled from billing-level auth: the caller must
send a well-formed ``Authorization: Bearer <token>`` header because clients
of the public API expect to, but the token itself is never checked or
forwarded. The credential used upstream always comes from the configured
CredentialStore. This lets clients that only know how to send a placeholder
token work unchanged.
"""

import os
from typing import Optional, Protocol

from chatproxy.errors import AuthenticationError
from chatproxy.telemetry import logger, mask_api_key

_BEARER_PREFIX = "Bearer "

MISSING_BEARER_MESSAGE = (
    "You didn't provide an API key. You need to provide your API key in an "
    "Authorization header using Bearer auth (i.e. Authorization: Bearer YOUR_KEY)."
)

MISSING_CREDENTIAL_MESSAGE = (
    "API key not configured. Please configure your upstream API key "
    "before using the proxy."
)


class CredentialStore(Protocol):
    """Source of the credential used for upstream calls."""

    def get_configured_credential(self) -> str:
        ...


class EnvCredentialStore:
    """Reads the upstream credential from an environment variable."""

    def __init__(self, env_var: str) -> None:
        self.env_var = env_var

    def get_configured_credential(self) -> str:
        return os.getenv(self.env_var, "")


class StaticCredentialStore:
    """Holds a credential supplied at construction time."""

    def __init__(self, credential: str) -> None:
        self._credential = credential

    def get_configured_credential(self) -> str:
        return self._credential


def extract_bearer_token(header_value: Optional[str]) -> str:
    """Check the Authorization header for protocol compliance.

    Args:
        header_value: Raw Authorization header (may be None).

    Returns:
        The bearer token sent by the caller.

    Raises:
        AuthenticationError: If the header is missing, not a Bearer header,
            or carries a blank token.
    """
    if not header_value or not header_value.startswith(_BEARER_PREFIX):
        raise AuthenticationError(MISSING_BEARER_MESSAGE, code="invalid_api_key")

    token = header_value[len(_BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationError(MISSING_BEARER_MESSAGE, code="invalid_api_key")
    return token


def resolve_credential(header_value: Optional[str], store: CredentialStore) -> str:
    """Validate the caller's header and return the stored upstream credential.

    Args:
        header_value: Raw Authorization header from the inbound request.
        store: Where the real upstream credential lives.

    Returns:
        The configured upstream credential (never the caller's token).

    Raises:
        AuthenticationError: If the header is malformed or no credential is
            configured.
    """
    extract_bearer_token(header_value)

    credential = (store.get_configured_credential() or "").strip()
    if not credential:
        raise AuthenticationError(MISSING_CREDENTIAL_MESSAGE, code="api_key_missing")
    logger.debug("Using upstream credential %s", mask_api_key(credential))
    return credential
