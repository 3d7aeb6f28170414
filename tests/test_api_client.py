import asyncio
import json
import unittest

import httpx

from chat_stream_runtime.api_client import ChatApiClient, extract_error_message
from chat_stream_runtime.errors import ConfigurationError, TransportError


def _client(handler, *, api_base: str | None = "https://api.test", stream_api_base: str | None = "https://stream.test"):
    return ChatApiClient(
        api_base=api_base,
        stream_api_base=stream_api_base,
        access_token="access-123",
        id_token="id-456",
        transport=httpx.MockTransport(handler),
    )


class ExtractErrorMessageTests(unittest.TestCase):
    def test_prefers_json_message_field(self) -> None:
        self.assertEqual("Forbidden thread", extract_error_message('{"message": "Forbidden thread"}', "Forbidden"))

    def test_falls_back_to_raw_body_then_reason(self) -> None:
        self.assertEqual("upstream exploded", extract_error_message("upstream exploded", "Bad Gateway"))
        self.assertEqual("Bad Gateway", extract_error_message("", "Bad Gateway"))
        self.assertEqual('{"error": "x"}', extract_error_message('{"error": "x"}', "Bad Request"))


class ChatApiClientTests(unittest.TestCase):
    def test_list_threads_uses_access_token_and_limit(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "items": [{"threadId": "t1", "title": "First", "createdAt": 1, "updatedAt": 2}],
                    "nextToken": "page-2",
                },
            )

        async def scenario():
            async with _client(handler) as api:
                return await api.list_threads(5)

        page = asyncio.run(scenario())

        self.assertEqual("t1", page.items[0].thread_id)
        self.assertEqual("page-2", page.next_page_token)
        self.assertEqual("Bearer access-123", seen[0].headers["Authorization"])
        self.assertEqual("5", seen[0].url.params["limit"])
        self.assertEqual("/threads", seen[0].url.path)

    def test_get_thread_quotes_id(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"threadId": "a/b", "title": "T", "updatedAt": 3, "messages": []})

        async def scenario():
            async with _client(handler) as api:
                return await api.get_thread("a/b")

        detail = asyncio.run(scenario())

        self.assertEqual("a/b", detail.thread_id)
        self.assertIn("/threads/a%2Fb", str(seen[0].url))

    def test_create_thread_posts_title(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"threadId": "new-1"})

        async def scenario():
            async with _client(handler) as api:
                return await api.create_thread("Ideas")

        self.assertEqual("new-1", asyncio.run(scenario()))
        self.assertEqual({"title": "Ideas"}, bodies[0])

    def test_error_status_raises_transport_error_with_message(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"message": "not your thread"})

        async def scenario():
            async with _client(handler) as api:
                await api.get_thread("t1")

        with self.assertRaises(TransportError) as ctx:
            asyncio.run(scenario())
        self.assertEqual(403, ctx.exception.status)
        self.assertEqual("not your thread", ctx.exception.message)
        self.assertIn("HTTP 403", str(ctx.exception))

    def test_network_failure_raises_transport_error_without_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async def scenario():
            async with _client(handler) as api:
                await api.list_threads()

        with self.assertRaises(TransportError) as ctx:
            asyncio.run(scenario())
        self.assertIsNone(ctx.exception.status)

    def test_missing_api_base_raises_configuration_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async def scenario():
            async with _client(handler, api_base=None) as api:
                self.assertFalse(api.threads_enabled)
                await api.list_threads()

        with self.assertRaises(ConfigurationError):
            asyncio.run(scenario())

    def test_chat_stream_uses_id_token_and_yields_body(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b'{"model":"x"}' + b"\x00" * 8 + b"Hello")

        async def scenario() -> bytes:
            async with _client(handler) as api:
                async with api.open_chat_stream(
                    thread_id="t1",
                    text="hi",
                    client_message_id="c1",
                    web_search=True,
                ) as stream:
                    self.assertEqual(200, stream.status_code)
                    return b"".join([chunk async for chunk in stream.chunks()])

        body = asyncio.run(scenario())

        self.assertTrue(body.endswith(b"Hello"))
        self.assertEqual("Bearer id-456", seen[0].headers["Authorization"])
        self.assertEqual("https://stream.test/chat", str(seen[0].url))
        self.assertEqual(
            {"threadId": "t1", "text": "hi", "clientMsgId": "c1", "capabilities": {"web_search": True}},
            json.loads(seen[0].content),
        )

    def test_chat_stream_error_status_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="lambda timed out")

        async def scenario() -> None:
            async with _client(handler) as api:
                async with api.open_chat_stream(thread_id="t1", text="hi", client_message_id="c1"):
                    self.fail("stream body must not be reached")

        with self.assertRaises(TransportError) as ctx:
            asyncio.run(scenario())
        self.assertEqual(502, ctx.exception.status)
        self.assertEqual("lambda timed out", ctx.exception.message)

    def test_chat_stream_without_base_raises_configuration_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async def scenario() -> None:
            async with _client(handler, stream_api_base=None) as api:
                self.assertFalse(api.streaming_enabled)
                async with api.open_chat_stream(thread_id="t1", text="hi", client_message_id="c1"):
                    pass

        with self.assertRaises(ConfigurationError):
            asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
