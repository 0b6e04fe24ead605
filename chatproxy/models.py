"""Wire models for the public chat-completion surface.

Request models allow unknown fields so that parameters added by either API
(tools, response_format, provider routing hints, ...) pass through untouched.
"""

import time
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ContentPart = Dict[str, Any]


class ChatMessage(BaseModel):
    """A single message in a chat conversation.

    ``content`` is either plain text or a list of typed parts
    (``text``, ``image_url``, ``input_audio``, ``video_url``, ``file``).
    """

    model_config = ConfigDict(extra="allow")

    role: str = Field(..., min_length=1)
    content: Optional[Union[str, List[ContentPart]]] = None
    name: Optional[str] = None


class ChatRequest(BaseModel):
    """Incoming chat-completion request."""

    model_config = ConfigDict(extra="allow", frozen=True)

    model: str = Field(..., min_length=1, description="Model id to forward")
    messages: List[ChatMessage] = Field(
        ..., min_length=1, description="Conversation messages"
    )
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[Union[str, List[str]]] = None
    user: Optional[str] = None


class UsageInfo(BaseModel):
    """Token usage information returned by the upstream."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ResponseMessage(BaseModel):
    """Assistant message inside a non-streaming choice."""

    model_config = ConfigDict(extra="allow")

    role: str = "assistant"
    content: Optional[str] = ""


class ChatChoice(BaseModel):
    index: int
    message: ResponseMessage
    finish_reason: Optional[str] = None


class ChatResponse(BaseModel):
    """Non-streaming chat-completion response."""

    id: str
    object: str = "chat.completion"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str
    choices: List[ChatChoice] = Field(default_factory=list)
    usage: Optional[UsageInfo] = None


class ChunkDelta(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None


class ChunkChoice(BaseModel):
    index: int = 0
    delta: ChunkDelta
    finish_reason: Optional[str] = None


class StreamChunk(BaseModel):
    """One ``chat.completion.chunk`` frame of an event stream."""

    id: str
    object: str = "chat.completion.chunk"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str
    choices: List[ChunkChoice]


class ErrorDetail(BaseModel):
    """Structured error detail."""

    message: str
    type: str
    code: Optional[Union[str, int]] = None
    param: Optional[str] = None
    request_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail


class ModelDescriptor(BaseModel):
    """A model entry in the ``/v1/models`` listing."""

    id: str
    object: str = "model"
    created: int = 0
    owned_by: str = "openrouter"


class ModelList(BaseModel):
    object: str = "list"
    data: List[ModelDescriptor] = Field(default_factory=list)
