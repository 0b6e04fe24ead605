"""Shared test fixtures for the chat-completion proxy tests."""

import json
from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from chatproxy.config import ProxyConfig, load_config
from chatproxy.upstream import UpstreamClient

TEST_CREDENTIAL = "sk-or-v1-test-credential-0123456789"

CAPABILITIES_YAML = """\
models:
  openai/gpt-4o-mini:
    input_modalities: [text, image, file]
  meta-llama/llama-3-8b-instruct:
    input_modalities: [text]
  google/gemini-2.5-pro:
    input_modalities: [text, image, audio, video, document]
"""


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    capabilities_path = tmp_path / "capabilities.yaml"
    capabilities_path.write_text(CAPABILITIES_YAML)

    config = {
        "upstream": {
            "base_url": "https://upstream.test/api/v1",
            "api_key_env": "TEST_UPSTREAM_KEY",
            "connect_timeout": 5,
            "read_timeout": 10,
            "write_timeout": 5,
        },
        "catalog": {"source": "static", "models": ["test/model-a"]},
        "dedup_window_seconds": 1.0,
        "notification_throttle_seconds": 3600,
        "capabilities_file": str(capabilities_path),
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> ProxyConfig:
    """Return a loaded test ProxyConfig."""
    return load_config(test_config_path)


class UpstreamMock:
    """Records every request sent upstream and answers with a handler."""

    def __init__(
        self,
        handler: Callable[[httpx.Request], httpx.Response],
        config: ProxyConfig,
    ) -> None:
        self.handler = handler
        self.requests: List[httpx.Request] = []
        self.client = UpstreamClient(
            config.upstream, transport=httpx.MockTransport(self)
        )

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def last_json(self) -> Dict:
        return json.loads(self.requests[-1].content)


def completion_body(model: str = "openai/gpt-4o-mini-2024-07-18", content: str = "Hello!") -> Dict:
    return {
        "id": "gen-abc123",
        "object": "chat.completion",
        "created": 1700000000,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
    }


def sse_body(*frames: Dict, done: bool = True) -> bytes:
    lines = ["data: {}\n\n".format(json.dumps(f)) for f in frames]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def stream_chunk(content: str, chunk_id: str = "gen-stream-1") -> Dict:
    return {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "openai/gpt-4o-mini",
        "choices": [{"index": 0, "delta": {"content": content}, "finish_reason": None}],
    }


@pytest.fixture()
def upstream_factory(test_config: ProxyConfig) -> Callable[..., UpstreamMock]:
    """Return a callable that builds an UpstreamMock from a response handler.

    Pass ``mock.client`` into create_app() and check ``mock.call_count``.
    """

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> UpstreamMock:
        return UpstreamMock(handler, test_config)

    return factory
