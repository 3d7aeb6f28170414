from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from loguru import logger

from chat_stream_runtime.errors import ConfigurationError, TransportError
from chat_stream_runtime.transcript import Thread, ThreadDetail, ThreadPage

_DEFAULT_TIMEOUT_SECONDS = 30.0


def extract_error_message(raw: str, reason: str = "") -> str:
    """Best-effort message from a JSON ``{"message": ...}`` or plain-text error body."""
    try:
        data = json.loads(raw)
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return raw.strip() or reason or "request failed"


class ChatStream:
    """Body of a successful streaming response."""

    def __init__(self, response: httpx.Response):
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as ex:
            raise TransportError(str(ex) or type(ex).__name__, operation="Chat stream") from ex


class ChatBackend(Protocol):
    @property
    def threads_enabled(self) -> bool: ...

    @property
    def streaming_enabled(self) -> bool: ...

    async def list_threads(self, limit: int = 20, next_page_token: str | None = None) -> ThreadPage: ...

    async def create_thread(self, title: str = "Untitled") -> str: ...

    async def get_thread(self, thread_id: str) -> ThreadDetail: ...

    async def post_chat(self, thread_id: str, text: str, client_message_id: str) -> str: ...

    def open_chat_stream(
        self,
        *,
        thread_id: str,
        text: str,
        client_message_id: str,
        web_search: bool = False,
    ) -> Any: ...


class ChatApiClient:
    """Client for the threads API and the streaming chat endpoint.

    Thread calls use the access token; the streaming endpoint sits behind a
    different authorizer and takes the identity token.
    """

    def __init__(
        self,
        *,
        api_base: str | None,
        stream_api_base: str | None,
        access_token: str = "",
        id_token: str = "",
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_base = (api_base or "").rstrip("/")
        self._stream_api_base = (stream_api_base or "").rstrip("/")
        self._access_headers = {"Authorization": f"Bearer {access_token}"}
        self._id_headers = {"Authorization": f"Bearer {id_token}"}
        self._timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def __aenter__(self) -> ChatApiClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def threads_enabled(self) -> bool:
        return bool(self._api_base)

    @property
    def streaming_enabled(self) -> bool:
        return bool(self._stream_api_base)

    async def list_threads(self, limit: int = 20, next_page_token: str | None = None) -> ThreadPage:
        params: dict[str, Any] = {"limit": limit}
        if next_page_token:
            params["nextToken"] = next_page_token
        data = await self._request_json("ListThreads", "GET", self._api_url("/threads"), params=params)
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            items = []
        next_token = data.get("nextToken") if isinstance(data, dict) else None
        return ThreadPage(
            items=[Thread.from_wire(item) for item in items if isinstance(item, dict)],
            next_page_token=str(next_token) if next_token else None,
        )

    async def create_thread(self, title: str = "Untitled") -> str:
        data = await self._request_json("CreateThread", "POST", self._api_url("/threads"), json={"title": title})
        thread_id = str(data.get("threadId") or "") if isinstance(data, dict) else ""
        if not thread_id:
            raise TransportError("response missing threadId", status=200, operation="CreateThread")
        return thread_id

    async def get_thread(self, thread_id: str) -> ThreadDetail:
        url = self._api_url(f"/threads/{quote(thread_id, safe='')}")
        data = await self._request_json("GetThread", "GET", url)
        return ThreadDetail.from_wire(data if isinstance(data, dict) else {})

    async def post_chat(self, thread_id: str, text: str, client_message_id: str) -> str:
        payload = {"threadId": thread_id, "text": text, "clientMsgId": client_message_id}
        data = await self._request_json("Chat", "POST", self._api_url("/chat"), json=payload)
        return str(data.get("text") or "") if isinstance(data, dict) else ""

    @asynccontextmanager
    async def open_chat_stream(
        self,
        *,
        thread_id: str,
        text: str,
        client_message_id: str,
        web_search: bool = False,
    ) -> AsyncIterator[ChatStream]:
        if not self._stream_api_base:
            raise ConfigurationError("Missing STREAM_API_BASE")
        payload = {
            "threadId": thread_id,
            "text": text,
            "clientMsgId": client_message_id,
            "capabilities": {"web_search": web_search},
        }
        logger.debug(f"Chat stream request: thread={thread_id}, chars={len(text)}, web_search={web_search}")
        # Read timeouts are enforced by the stream watchdogs instead.
        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            async with self._client.stream(
                "POST",
                f"{self._stream_api_base}/chat",
                headers=self._id_headers,
                json=payload,
                timeout=timeout,
            ) as response:
                if not response.is_success:
                    raw = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        extract_error_message(raw, response.reason_phrase),
                        status=response.status_code,
                        operation="Chat stream",
                    )
                yield ChatStream(response)
        except httpx.HTTPError as ex:
            raise TransportError(str(ex) or type(ex).__name__, operation="Chat stream") from ex

    def _api_url(self, path: str) -> str:
        if not self._api_base:
            raise ConfigurationError("Missing API_BASE")
        return f"{self._api_base}{path}"

    async def _request_json(self, operation: str, method: str, url: str, **kwargs: Any) -> Any:
        logger.debug(f"{operation} request: {method} {url}")
        try:
            response = await self._client.request(method, url, headers=self._access_headers, **kwargs)
        except httpx.HTTPError as ex:
            raise TransportError(str(ex) or type(ex).__name__, operation=operation) from ex

        raw = response.text
        if not response.is_success:
            raise TransportError(
                extract_error_message(raw, response.reason_phrase),
                status=response.status_code,
                operation=operation,
            )
        try:
            return json.loads(raw) if raw else None
        except ValueError as ex:
            raise TransportError(f"invalid JSON body: {ex}", status=response.status_code, operation=operation) from ex
