"""
Transport abstraction.
The session talks to the backend only through BaseTransport, so tests can
swap in a fake and the session never touches httpx directly.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import AsyncIterator

import httpx

from chatwire.errors import TransportFailure

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = {
    "models": "/chat/models",
    "send": "/chat/send",
    "clear": "/chat/history",
}

STREAM_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "text/event-stream",
    "Cache-Control": "no-cache",
}


class ChatStream(abc.ABC):
    """An open streamed response. aclose() must release the connection."""

    status_code: int = 200

    @abc.abstractmethod
    def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield body chunks as the transport delivers them."""
        ...

    @abc.abstractmethod
    async def aclose(self) -> None:
        ...


class BaseTransport(abc.ABC):
    """Abstract base for the three backend calls the client needs."""

    @abc.abstractmethod
    async def fetch_models(self) -> dict:
        """GET the model registry payload (parsed JSON)."""
        ...

    @abc.abstractmethod
    async def open_chat_stream(self, body: dict) -> ChatStream:
        """
        POST a chat message and return once response headers are in.
        Raises TransportFailure on network errors and non-2xx status.
        """
        ...

    @abc.abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """Ask the backend to release server-side conversation state."""
        ...

    async def aclose(self) -> None:
        """Release any pooled connections."""


class HttpChatStream(ChatStream):
    """ChatStream over an httpx streaming response."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self.status_code = response.status_code
        self._closed = False

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as e:
            logger.warning("Chat stream interrupted: %s", e)
            raise TransportFailure(str(e) or e.__class__.__name__) from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Shielded so a cancelled caller still releases the connection
        await asyncio.shield(self._response.aclose())


class HttpTransport(BaseTransport):
    """Transport for the chat backend over HTTP."""

    def __init__(
        self,
        url: str,
        endpoints: dict | None = None,
        timeout: float = 120,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url.rstrip("/")
        self.endpoints = {**DEFAULT_ENDPOINTS, **(endpoints or {})}
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _endpoint(self, name: str) -> str:
        return f"{self.url}{self.endpoints[name]}"

    async def fetch_models(self) -> dict:
        try:
            resp = await self._client.get(self._endpoint("models"))
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise TransportFailure(
                f"HTTP {e.response.status_code}: {e.response.reason_phrase}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.warning("Model registry fetch from '%s' failed: %s", self.url, e)
            raise TransportFailure(str(e) or e.__class__.__name__) from e

    async def open_chat_stream(self, body: dict) -> ChatStream:
        request = self._client.build_request(
            "POST",
            self._endpoint("send"),
            json=body,
            headers=STREAM_HEADERS,
        )
        try:
            resp = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.warning("Chat request to '%s' timed out after %ss", self.url, self.timeout)
            raise TransportFailure(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Chat request to '%s' failed: %s", self.url, e)
            raise TransportFailure(str(e) or e.__class__.__name__) from e

        if not resp.is_success:
            await resp.aclose()
            raise TransportFailure(
                f"HTTP {resp.status_code}: {resp.reason_phrase}",
                status_code=resp.status_code,
            )
        return HttpChatStream(resp)

    async def delete_conversation(self, conversation_id: str) -> None:
        try:
            resp = await self._client.delete(f"{self._endpoint('clear')}/{conversation_id}")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportFailure(str(e) or e.__class__.__name__) from e

    async def aclose(self) -> None:
        await self._client.aclose()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} url={self.url!r} timeout={self.timeout}>"
