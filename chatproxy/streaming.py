"""Server-Sent-Events relay between the upstream and the caller.

Once the stream headers are out the HTTP status can no longer report a
failure, so every error on this path is turned into a regular
``chat.completion.chunk`` whose delta carries the message, followed by the
``[DONE]`` marker. Client parsers expect that shape and tend to drop or
crash on a raw error object inside an event stream.

The relay itself is a pure per-request state machine (StreamRelay); the
pipeline drives it from the upstream response and owns the I/O.
"""

import asyncio
import json
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chatproxy.classifier import (
    RULE_PASSTHROUGH,
    UpstreamError,
    classify,
    enhance_stream_error_message,
    extract_error_from_content,
    extract_upstream_message,
)
from chatproxy.models import ChunkChoice, ChunkDelta, StreamChunk
from chatproxy.notifier import NotificationSink
from chatproxy.telemetry import logger
from chatproxy.upstream import UpstreamClient

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"
DONE_FRAME = "data: [DONE]\n\n"
MAX_DIAGNOSTIC_CHARS = 10000

NO_RESPONSE_MESSAGE = "No response received from model. Please try again."
UNEXPECTED_FORMAT_MESSAGE = "Unexpected response format from model"
PROVIDER_ERROR_MESSAGE = "The model provider returned an error. Please try again."

_REQUIRED_CHUNK_FIELDS = ("id", "object", "created", "model", "choices")


class StreamState(str, Enum):
    AWAITING_FRAME = "awaiting_frame"
    FRAME_RECEIVED = "frame_received"
    FORWARD_VALID = "forward_valid"
    SYNTHESIZE_ERROR = "synthesize_error"
    DONE = "done"


def format_sse(data: str) -> str:
    return "{} {}\n\n".format(DATA_PREFIX, data)


def error_chunk(message: str, model: str) -> Dict[str, Any]:
    """Build a synthesized chunk that carries ``message`` as assistant content."""
    chunk = StreamChunk(
        id="chatcmpl-error-{}".format(uuid.uuid4().hex[:8]),
        model=model,
        choices=[
            ChunkChoice(
                index=0,
                delta=ChunkDelta(role="assistant", content=message),
                finish_reason="stop",
            )
        ],
    )
    return chunk.model_dump()


class StreamRelay:
    """Classifies upstream lines and decides what reaches the caller.

    Every method returns the SSE frames to write, in order. Once the relay is
    DONE it returns nothing, so the terminal marker is written exactly once
    no matter how many exit paths call finish().
    """

    def __init__(
        self,
        requested_model: str,
        request_id: str = "-",
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self.requested_model = requested_model
        self.request_id = request_id
        self.notifier = notifier
        self.state = StreamState.AWAITING_FRAME
        self.transitions: List[StreamState] = [self.state]
        self.frames_sent = 0
        self._diagnostic: List[str] = []
        self._diagnostic_size = 0

    def _enter(self, state: StreamState) -> None:
        self.state = state
        self.transitions.append(state)

    @property
    def done(self) -> bool:
        return self.state == StreamState.DONE

    @property
    def diagnostic(self) -> str:
        return "\n".join(self._diagnostic)

    def feed(self, line: str) -> List[str]:
        """Process one upstream line (without its trailing newline)."""
        if self.done:
            return []

        stripped = line.strip()
        if not stripped or stripped.startswith(":"):
            return []

        if not stripped.startswith(DATA_PREFIX):
            self._remember(stripped)
            return []

        self._enter(StreamState.FRAME_RECEIVED)
        data = stripped[len(DATA_PREFIX):].strip()
        if data == DONE_MARKER:
            return self.finish()

        try:
            frame = json.loads(data)
        except ValueError:
            logger.warning(
                "[%s] Forwarding unparseable stream frame as-is: %s",
                self.request_id,
                data[:200],
            )
            return self._forward(data)

        if isinstance(frame, dict) and frame.get("error"):
            self._enter(StreamState.SYNTHESIZE_ERROR)
            message = self._message_for_error_frame(frame, data)
            logger.error(
                "[%s] Upstream sent an error inside the stream: %s",
                self.request_id,
                message.splitlines()[0],
            )
            return self._emit_error(message)

        if isinstance(frame, dict):
            missing = [k for k in _REQUIRED_CHUNK_FIELDS if k not in frame]
            if missing:
                logger.debug(
                    "[%s] Stream chunk missing fields: %s",
                    self.request_id,
                    ", ".join(missing),
                )
        return self._forward(data)

    def fail(self, message: str) -> List[str]:
        """Report ``message`` as a chunk and terminate the stream."""
        if self.done:
            return []
        self._enter(StreamState.SYNTHESIZE_ERROR)
        frames = self._emit_error(message)
        return frames + self.finish()

    def finish(self) -> List[str]:
        """Terminate the stream, synthesizing a chunk if nothing was sent."""
        if self.done:
            return []
        frames: List[str] = []
        if self.frames_sent == 0:
            self._enter(StreamState.SYNTHESIZE_ERROR)
            frames.extend(self._emit_error(self._fallback_message()))
        self._enter(StreamState.DONE)
        frames.append(DONE_FRAME)
        return frames

    def _forward(self, data: str) -> List[str]:
        self._enter(StreamState.FORWARD_VALID)
        self.frames_sent += 1
        self._enter(StreamState.AWAITING_FRAME)
        return [format_sse(data)]

    def _emit_error(self, message: str) -> List[str]:
        self.frames_sent += 1
        self._enter(StreamState.AWAITING_FRAME)
        chunk = error_chunk(message, self.requested_model)
        return [format_sse(json.dumps(chunk))]

    def _remember(self, line: str) -> None:
        remaining = MAX_DIAGNOSTIC_CHARS - self._diagnostic_size
        if remaining <= 0:
            return
        kept = line[:remaining]
        self._diagnostic.append(kept)
        self._diagnostic_size += len(kept)

    def _message_for_error_frame(self, frame: Dict[str, Any], raw: str) -> str:
        error = frame.get("error")
        code = error.get("code") if isinstance(error, dict) else None
        status = code if isinstance(code, int) and code >= 400 else 200
        return self._classified_message(UpstreamError(status, raw))

    def _classified_message(self, error: UpstreamError) -> str:
        classified = classify(error, self.notifier, self.request_id)
        if classified.rule != RULE_PASSTHROUGH:
            return classified.user_message
        extracted = extract_upstream_message(error.raw_body)
        if not extracted:
            return PROVIDER_ERROR_MESSAGE
        return enhance_stream_error_message(extracted)

    def _fallback_message(self) -> str:
        content = self.diagnostic.strip()
        if not content:
            logger.warning("[%s] Upstream stream was empty", self.request_id)
            return NO_RESPONSE_MESSAGE

        logger.warning(
            "[%s] No SSE frames in upstream body (first 500 chars): %s",
            self.request_id,
            content[:500],
        )
        if extract_upstream_message(content):
            return self._classified_message(UpstreamError(200, content))
        return extract_error_from_content(content) or UNEXPECTED_FORMAT_MESSAGE


class StreamingPipeline:
    """Relays one upstream streaming call to the caller as SSE text."""

    def __init__(
        self, upstream: UpstreamClient, notifier: Optional[NotificationSink] = None
    ) -> None:
        self.upstream = upstream
        self.notifier = notifier

    async def run(
        self,
        payload: Dict[str, Any],
        credential: str,
        requested_model: str,
        request_id: str,
    ) -> AsyncIterator[str]:
        """Yield SSE frames for one request.

        The upstream stream is opened here rather than by the caller so that
        closing this generator always releases the upstream connection.
        Always ends with exactly one ``[DONE]`` frame unless the caller
        disconnects first.
        """
        relay = StreamRelay(requested_model, request_id, self.notifier)
        failure: Optional[str] = None

        try:
            async with self.upstream.stream_chat(payload, credential) as response:
                if not response.is_success:
                    raw = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(
                        "[%s] Upstream returned HTTP %d for streaming request",
                        request_id,
                        response.status_code,
                    )
                    classified = classify(
                        UpstreamError(response.status_code, raw), self.notifier, request_id
                    )
                    failure = classified.user_message
                else:
                    async for line in response.aiter_lines():
                        for frame in relay.feed(line):
                            yield frame
                        if relay.done:
                            break
        except (GeneratorExit, asyncio.CancelledError):
            logger.info("[%s] Client disconnected during streaming", request_id)
            raise
        except httpx.TimeoutException as exc:
            logger.error("[%s] Upstream stream timed out: %s", request_id, exc)
            failure = (
                "Request timed out.\n\n"
                "The model took too long to respond. Please try again."
            )
        except httpx.TransportError as exc:
            logger.error("[%s] Network error during streaming: %s", request_id, exc)
            failure = "Network error communicating with upstream: {}".format(exc)
        except Exception as exc:
            logger.exception("[%s] Unexpected error during streaming", request_id)
            failure = "Internal proxy error: {}".format(exc)

        frames = relay.fail(failure) if failure is not None else relay.finish()
        for frame in frames:
            yield frame
