"""FastAPI application for the chat-completion proxy.

Exposes an OpenAI-compatible surface and forwards chat completions to an
upstream aggregation API.

Request flow for a chat completion:
1. Assign a correlation id used in every log line and error body
2. Duplicate detection (advisory, logged only)
3. Bearer header check, then credential lookup in the credential store
4. Parse and validate the request body
5. Capability pre-validation BEFORE any upstream call
6. Translate and forward, streaming or single-shot

All shared state lives in a ProxyState attached to the app, so separate
app instances never share dedup maps, caches or connections.
"""

import json
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import pydantic
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatproxy.auth import (
    CredentialStore,
    EnvCredentialStore,
    extract_bearer_token,
    resolve_credential,
)
from chatproxy.capabilities import (
    ModelCapabilityRegistry,
    StaticCapabilityRegistry,
    load_capabilities,
    validate_capabilities,
)
from chatproxy.catalog import (
    MODES,
    ModelCatalog,
    StaticModelCatalog,
    UpstreamModelCatalog,
)
from chatproxy.config import ProxyConfig, default_config
from chatproxy.dedup import RequestDeduplicator
from chatproxy.errors import (
    InternalError,
    NetworkError,
    ProxyError,
    UnsupportedCapabilityError,
    ValidationError,
)
from chatproxy.models import ChatRequest, ModelList
from chatproxy.nonstreaming import complete
from chatproxy.notifier import LoggingNotifier, NotificationSink
from chatproxy.streaming import StreamingPipeline
from chatproxy.telemetry import log_request, logger, setup_logging
from chatproxy.translator import translate_request, validate_translated_request
from chatproxy.upstream import UpstreamClient

VERSION = "0.1.0"
SERVICE_NAME = "chatproxy"

ALLOWED_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
ALLOWED_HEADERS = ["Content-Type", "Authorization", "X-Requested-With"]
CORS_MAX_AGE = 3600

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

ENDPOINTS = [
    "/v1/models",
    "/models",
    "/v1/chat/completions",
    "/chat/completions",
    "/v1/engines",
    "/v1/organizations",
    "/health",
]

_ENGINES = [
    ("gpt-4", 1687882411),
    ("gpt-4-turbo", 1712361441),
    ("gpt-3.5-turbo", 1677610602),
]


@dataclass
class ProxyState:
    """Everything a request handler needs, owned by one app instance."""

    config: ProxyConfig
    credential_store: CredentialStore
    capability_registry: ModelCapabilityRegistry
    upstream: UpstreamClient
    notifier: NotificationSink
    catalog: ModelCatalog
    deduplicator: RequestDeduplicator = field(default_factory=RequestDeduplicator)

    @property
    def streaming(self) -> StreamingPipeline:
        return StreamingPipeline(self.upstream, self.notifier)


def new_request_id() -> str:
    return "chat-{}".format(uuid.uuid4().hex[:12])


def _load_registry(config: ProxyConfig) -> ModelCapabilityRegistry:
    if not config.capabilities_file:
        return StaticCapabilityRegistry()
    try:
        return load_capabilities(config.capabilities_file)
    except (FileNotFoundError, ValueError) as exc:
        logger.warning("Capability registry unavailable, pre-validation disabled: %s", exc)
        return StaticCapabilityRegistry()


def _build_catalog(config: ProxyConfig, upstream: UpstreamClient) -> ModelCatalog:
    if config.catalog.source == "upstream":
        return UpstreamModelCatalog(
            upstream,
            extra_ids=config.catalog.models,
            ttl_seconds=config.catalog.cache_ttl_seconds,
        )
    return StaticModelCatalog(config.catalog.models)


def _error_response(error: ProxyError, request_id: Optional[str] = None) -> JSONResponse:
    """Build a consistent JSON error response."""
    headers = {"X-Request-ID": request_id} if request_id else None
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_body(request_id),
        headers=headers,
    )


def to_proxy_error(exc: Exception, request_id: str) -> ProxyError:
    """Map anything raised while handling a request to a ProxyError.

    This is the coarse boundary: nothing escapes to the ASGI server.
    """
    if isinstance(exc, ProxyError):
        if exc.status_code >= 500:
            logger.error("[%s] %s: %s", request_id, type(exc).__name__, exc.message)
        else:
            logger.warning("[%s] %s: %s", request_id, type(exc).__name__, exc.message)
        return exc
    if isinstance(exc, httpx.TimeoutException):
        logger.error("[%s] Request timeout: %s", request_id, exc)
        return NetworkError(
            "Request timed out", status_code=408, code="timeout", error_type="timeout_error"
        )
    if isinstance(exc, (httpx.TransportError, OSError)):
        logger.error("[%s] Network error: %s", request_id, exc)
        return NetworkError("Network error: {}".format(exc))
    if isinstance(exc, ValueError):
        logger.warning("[%s] Invalid argument: %s", request_id, exc)
        return ValidationError("Invalid request: {}".format(exc))
    if isinstance(exc, RuntimeError):
        logger.exception("[%s] Invalid state", request_id)
        return InternalError("Internal server error: {}".format(exc))
    logger.exception("[%s] Unexpected error", request_id)
    return InternalError("Internal server error")


def parse_chat_request(body: bytes) -> ChatRequest:
    """Parse and validate the raw chat request body.

    Raises:
        ValidationError: On malformed JSON or missing/invalid fields.
    """
    if not body.strip():
        raise ValidationError("Request body is empty", code="invalid_json")
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise ValidationError(
            "Invalid JSON in request body: {}".format(exc), code="invalid_json"
        ) from exc
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", code="invalid_json")

    try:
        return ChatRequest.model_validate(data)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        loc = first.get("loc") or ("body",)
        param = str(loc[0])
        if param == "model":
            message = "Model is required"
        elif param == "messages" and len(loc) == 1:
            message = "Messages cannot be null or empty"
        else:
            message = "Invalid value for '{}': {}".format(
                ".".join(str(p) for p in loc), first.get("msg")
            )
        raise ValidationError(message, param=param) from exc


def create_app(
    config: Optional[ProxyConfig] = None,
    *,
    credential_store: Optional[CredentialStore] = None,
    capability_registry: Optional[ModelCapabilityRegistry] = None,
    upstream: Optional[UpstreamClient] = None,
    notifier: Optional[NotificationSink] = None,
    catalog: Optional[ModelCatalog] = None,
) -> FastAPI:
    """Build a proxy app. Collaborators not supplied are built from config."""
    config = config or default_config()
    upstream = upstream or UpstreamClient(config.upstream)
    state = ProxyState(
        config=config,
        credential_store=credential_store
        or EnvCredentialStore(config.upstream.api_key_env),
        capability_registry=capability_registry or _load_registry(config),
        upstream=upstream,
        notifier=notifier or LoggingNotifier(config.notification_throttle_seconds),
        catalog=catalog or _build_catalog(config, upstream),
        deduplicator=RequestDeduplicator(window_seconds=config.dedup_window_seconds),
    )

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        """Initialize logging on startup and release upstream connections on shutdown."""
        setup_logging(config.log_file)
        logger.info(
            "%s %s forwarding to %s", SERVICE_NAME, VERSION, config.upstream.base_url
        )
        yield
        await state.upstream.aclose()

    application = FastAPI(title="Chat Completion Proxy", version=VERSION, lifespan=lifespan)
    application.state.proxy = state

    @application.middleware("http")
    async def answer_options(request: Request, call_next: Any) -> Response:
        """Answer OPTIONS on any path, including ones without CORS request headers."""
        if request.method == "OPTIONS":
            return Response(
                status_code=200,
                headers={
                    "Access-Control-Allow-Origin": "*",
                    "Access-Control-Allow-Methods": ", ".join(ALLOWED_METHODS),
                    "Access-Control-Allow-Headers": ", ".join(ALLOWED_HEADERS),
                    "Access-Control-Max-Age": str(CORS_MAX_AGE),
                },
            )
        return await call_next(request)

    # Outermost: real CORS preflights are answered here before answer_options.
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=ALLOWED_METHODS,
        allow_headers=ALLOWED_HEADERS,
        max_age=CORS_MAX_AGE,
    )

    @application.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        return _error_response(exc)

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Convert routing errors (404, 405) into our error envelope format."""
        error = ProxyError(
            str(exc.detail),
            status_code=exc.status_code,
            code="not_found" if exc.status_code == 404 else exc.status_code,
            error_type="invalid_request_error",
        )
        return _error_response(error)

    @application.post("/v1/chat/completions", response_model=None)
    @application.post("/chat/completions", response_model=None)
    async def chat_completions(request: Request) -> Response:
        return await handle_chat(request, state)

    @application.get("/v1/models", response_model=None)
    @application.get("/models", response_model=None)
    async def list_models(request: Request) -> JSONResponse:
        params = request.query_params
        mode = params.get("mode") or "curated"
        if mode not in MODES:
            mode = "curated"
        limit_raw = params.get("limit")
        limit = int(limit_raw) if limit_raw and limit_raw.isdigit() else None
        models = await state.catalog.list(
            mode=mode,
            search=params.get("search"),
            provider=params.get("provider"),
            limit=limit,
        )
        logger.info("Returning %d models (mode: %s)", len(models), mode)
        return JSONResponse(content=ModelList(data=models).model_dump())

    @application.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @application.get("/")
    async def root() -> Dict[str, Any]:
        return {
            "message": "OpenAI-compatible chat completion proxy",
            "version": VERSION,
            "endpoints": ENDPOINTS,
            "compatible_with": "OpenAI API v1",
            "upstream": config.upstream.base_url,
        }

    @application.get("/v1/engines")
    async def list_engines(request: Request) -> Dict[str, Any]:
        extract_bearer_token(request.headers.get("authorization"))
        return {
            "object": "list",
            "data": [
                {
                    "id": engine_id,
                    "object": "engine",
                    "owner": "openai",
                    "ready": True,
                    "created": created,
                }
                for engine_id, created in _ENGINES
            ],
        }

    @application.get("/v1/organizations")
    async def list_organizations(request: Request) -> Dict[str, Any]:
        extract_bearer_token(request.headers.get("authorization"))
        return {
            "object": "list",
            "data": [
                {
                    "object": "organization",
                    "id": "org-chatproxy",
                    "name": "Chat Completion Proxy",
                    "description": "Local OpenAI-compatible proxy",
                    "personal": False,
                    "default": True,
                    "role": "owner",
                    "created": 1677610602,
                }
            ],
        }

    return application


async def handle_chat(request: Request, state: ProxyState) -> Response:
    """Handle one chat completion request end to end."""
    request_id = new_request_id()
    started = time.perf_counter()
    remote_addr = request.client.host if request.client else "unknown"
    logger.info("[%s] %s %s from %s", request_id, request.method, request.url.path, remote_addr)

    model: Optional[str] = None
    stream = False
    duplicate = False
    try:
        body = await request.body()
        duplicate = state.deduplicator.check(body, remote_addr, request_id)
        credential = resolve_credential(
            request.headers.get("authorization"), state.credential_store
        )

        chat_request = parse_chat_request(body)
        model = chat_request.model
        stream = chat_request.stream
        logger.info(
            "[%s] Chat request: model=%s, messages=%d, stream=%s",
            request_id,
            model,
            len(chat_request.messages),
            stream,
        )

        violation = validate_capabilities(
            chat_request, state.capability_registry, request_id
        )
        if violation is not None:
            raise UnsupportedCapabilityError(violation.message, param="model")

        payload = translate_request(chat_request, state.config.default_max_tokens)
        validate_translated_request(payload)

        if stream:
            log_request(
                request_id=request_id,
                model=model,
                stream=True,
                outcome="stream_started",
                status=200,
                duration_ms=(time.perf_counter() - started) * 1000,
                duplicate=duplicate,
            )
            headers = dict(SSE_HEADERS)
            headers["X-Request-ID"] = request_id
            return StreamingResponse(
                state.streaming.run(payload, credential, model, request_id),
                media_type="text/event-stream",
                headers=headers,
            )

        response = await complete(
            state.upstream, payload, credential, model, request_id, state.notifier
        )
    except Exception as exc:
        error = to_proxy_error(exc, request_id)
        log_request(
            request_id=request_id,
            model=model,
            stream=stream,
            outcome=error.kind.value,
            status=error.status_code,
            duration_ms=(time.perf_counter() - started) * 1000,
            error=error.message.splitlines()[0] if error.message else None,
            duplicate=duplicate,
        )
        return _error_response(error, request_id)

    duration_ms = (time.perf_counter() - started) * 1000
    logger.info("[%s] Request completed in %.0fms", request_id, duration_ms)
    log_request(
        request_id=request_id,
        model=model,
        stream=False,
        outcome="success",
        status=200,
        duration_ms=duration_ms,
        duplicate=duplicate,
    )
    return JSONResponse(
        status_code=200,
        content=response.model_dump(),
        headers={"X-Request-ID": request_id},
    )


app = create_app()
