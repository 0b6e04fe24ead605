"""Client for the upstream OpenAI-compatible aggregation API.

One AsyncClient is shared by every request handled by an app instance.
Timeouts are fixed and generous because token generation is slow; there is
no per-stream deadline beyond the read timeout.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from chatproxy.config import UpstreamConfig


class UpstreamClient:
    """Thin wrapper over httpx.AsyncClient for the chat and models endpoints."""

    def __init__(
        self,
        config: UpstreamConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=config.connect_timeout,
                read=config.read_timeout,
                write=config.write_timeout,
                pool=config.connect_timeout,
            ),
            transport=transport,
        )

    def _headers(self, credential: str) -> Dict[str, str]:
        return {
            "Authorization": "Bearer {}".format(credential),
            "Content-Type": "application/json",
            "HTTP-Referer": self.config.referer,
            "Referer": self.config.referer,
            "X-Title": self.config.title,
        }

    async def post_chat(self, payload: Dict[str, Any], credential: str) -> httpx.Response:
        """Send a non-streaming chat completion and return the raw response.

        Raises:
            httpx.TimeoutException: On connect/read/write timeout.
            httpx.TransportError: On any other transport failure.
        """
        return await self._client.post(
            self.config.chat_url, json=payload, headers=self._headers(credential)
        )

    @asynccontextmanager
    async def stream_chat(
        self, payload: Dict[str, Any], credential: str
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming chat completion.

        The response body is released when the context exits, including when
        the consumer stops early.
        """
        headers = self._headers(credential)
        headers["Accept"] = "text/event-stream"
        async with self._client.stream(
            "POST", self.config.chat_url, json=payload, headers=headers
        ) as response:
            yield response

    async def get_models(self, credential: Optional[str] = None) -> httpx.Response:
        headers = self._headers(credential) if credential else {}
        return await self._client.get(self.config.models_url, headers=headers)

    async def aclose(self) -> None:
        await self._client.aclose()
