from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any
from uuid import uuid4

from loguru import logger

from chat_stream_runtime.api_client import ChatBackend
from chat_stream_runtime.app_config import RuntimeConfig
from chat_stream_runtime.errors import ChatRuntimeError, ConfigurationError, NoThreadSelectedError, TransportError
from chat_stream_runtime.operation import CancelReason, InFlightOperation, OperationCancelled, OperationSlot
from chat_stream_runtime.services.reconciliation_poller import (
    INTERIM_TEXT,
    ReconciliationPoller,
    looks_like_browsing_placeholder,
)
from chat_stream_runtime.stream_decoder import HybridStreamDecoder
from chat_stream_runtime.stream_timers import StreamTimers, TimeoutKind
from chat_stream_runtime.transcript import Message, Thread, TranscriptStore, now_ms

STOPPED_TEXT = "⏹️ Stopped."
EMPTY_STREAM_TEXT = "⚠️ stream ended with no content"
NO_RESPONSE_TEXT = "⚠️ no response from server"
STREAM_NOT_CONFIGURED_TEXT = "⚠️ Streaming endpoint is not configured (missing STREAM_API_BASE)."
THREADS_NOT_CONFIGURED_TEXT = "Threads API is not configured (missing API_BASE)."

_TIMEOUT_REASONS = {
    TimeoutKind.FIRST_BYTE: CancelReason.FIRST_BYTE_TIMEOUT,
    TimeoutKind.PROGRESS: CancelReason.STALLED,
}


def _new_message_id() -> str:
    return f"m_{uuid4()}"


def _dedupe(messages: Iterable[Message]) -> list[Message]:
    seen: set[str] = set()
    unique: list[Message] = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        unique.append(message)
    return unique


@dataclass(frozen=True)
class SessionToken:
    epoch: int
    thread_id: str


@dataclass(frozen=True)
class PendingReply:
    token: SessionToken
    operation: InFlightOperation
    text: str
    client_message_id: str
    user_timestamp: int
    placeholder_id: str


class _ReplyBuffer:
    """Batches decoded text so the transcript is not rewritten for every chunk."""

    def __init__(self, on_flush: Callable[[str], None], *, threshold: int, interval: float):
        self._on_flush = on_flush
        self._threshold = threshold
        self._interval = interval
        self._pending = ""
        self._handle: asyncio.TimerHandle | None = None
        self.text = ""
        self.bytes_received = 0
        self.saw_text = False

    def feed(self, text: str) -> None:
        if not text:
            return
        self.saw_text = True
        self._pending += text
        if len(self._pending) >= self._threshold:
            self.flush()
        elif self._handle is None:
            self._handle = asyncio.get_running_loop().call_later(self._interval, self._flush_later)

    def flush(self) -> None:
        if not self._pending:
            return
        self.text += self._pending
        self._pending = ""
        self._on_flush(self.text)

    def close(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self.flush()

    def _flush_later(self) -> None:
        self._handle = None
        self.flush()


class ChatSession:
    """Runtime for one active chat thread.

    Every asynchronous continuation captures a ``SessionToken`` when it starts
    and checks it before touching shared state. Activating a thread bumps the
    epoch, so results that arrive for a thread the user has left are dropped
    without being reported.
    """

    def __init__(
        self,
        api: ChatBackend,
        config: RuntimeConfig,
        *,
        on_change: Callable[[], None] | None = None,
        poller: ReconciliationPoller | None = None,
    ):
        self._api = api
        self._config = config
        self._on_change = on_change
        self._poller = poller or ReconciliationPoller(
            api,
            interval=config.poll_interval_seconds,
            deadline=config.poll_deadline_seconds,
        )
        self._slot = OperationSlot()
        self._epoch = 0
        self._streaming: InFlightOperation | None = None
        self._background: set[asyncio.Task] = set()

        self.thread_id: str | None = None
        self.transcript = TranscriptStore()
        self.threads: list[Thread] = []
        self.loading_threads = False
        self.threads_error: str | None = None
        self.hydrating = False
        self.hydrate_error: str | None = None
        self.last_metadata: dict[str, Any] | None = None

    @property
    def is_streaming(self) -> bool:
        return self._streaming is not None

    @property
    def can_stop(self) -> bool:
        return self.is_streaming or self._slot.busy

    # -- threads -----------------------------------------------------------

    async def load(self) -> None:
        """Fetch the thread list and open the most recent thread."""
        if not self._api.threads_enabled:
            self.threads_error = THREADS_NOT_CONFIGURED_TEXT
            self._notify()
            return

        self.loading_threads = True
        self.threads_error = None
        self._notify()
        try:
            threads = await self.refresh_threads()
        except ChatRuntimeError as ex:
            logger.warning(f"Failed to load threads: {ex}")
            self.threads_error = str(ex)
            return
        finally:
            self.loading_threads = False
            self._notify()

        if threads and self.thread_id is None:
            await self.switch_thread(threads[0].thread_id)

    async def refresh_threads(self) -> list[Thread]:
        if not self._api.threads_enabled:
            return []
        page = await self._api.list_threads(self._config.thread_list_limit)
        self.threads = list(page.items)
        self._notify()
        return self.threads

    async def create_thread(self, title: str = "Untitled") -> str:
        if not self._api.threads_enabled:
            raise ConfigurationError("Missing API_BASE")
        self.threads_error = None
        thread_id = await self._api.create_thread(title)
        logger.info(f"Created thread {thread_id}")
        self._activate(thread_id)
        await self.refresh_threads()
        return thread_id

    async def switch_thread(self, thread_id: str) -> None:
        self._activate(thread_id)
        await self._hydrate(self._capture())

    # -- sending -----------------------------------------------------------

    def stop(self) -> bool:
        return self._slot.cancel(CancelReason.USER)

    async def send_message(self, text: str, target_thread: str | None) -> None:
        """Stream a reply to ``text`` into the transcript.

        Raises TransportError when the streaming request fails while the
        thread is still active; every other outcome ends up in the transcript.
        """
        reply = self._begin_reply(text, target_thread)
        if reply is not None:
            await self._stream_reply(reply)

    async def send(self, text: str) -> None:
        reply = self._begin_reply(text, self.thread_id)
        if reply is None:
            return
        try:
            await self._stream_reply(reply)
        except TransportError as ex:
            if not self._config.non_streaming_fallback or not self._api.threads_enabled:
                logger.warning(f"Streaming failed: {ex}")
                return
            await self._fallback_reply(replace(reply, operation=InFlightOperation("chat")))

    def _begin_reply(self, text: str, target_thread: str | None) -> PendingReply | None:
        body = text.strip()
        if not body:
            logger.debug("Ignoring empty message")
            return None
        if not target_thread:
            raise NoThreadSelectedError("No thread selected")
        if target_thread != self.thread_id:
            self._activate(target_thread)

        self._slot.cancel(CancelReason.SUPERSEDED)

        if not self._api.streaming_enabled:
            self.transcript.append(
                Message(id=_new_message_id(), timestamp=now_ms(), role="assistant", text=STREAM_NOT_CONFIGURED_TEXT)
            )
            self._notify()
            return None

        client_message_id = str(uuid4())
        user_message = Message(
            id=f"m_{client_message_id}",
            timestamp=now_ms(),
            role="user",
            text=body,
            client_message_id=client_message_id,
        )
        placeholder = Message(id=_new_message_id(), timestamp=now_ms(), role="assistant", text=INTERIM_TEXT)
        self.transcript.append(user_message)
        self.transcript.append(placeholder)

        operation = InFlightOperation("send")
        self._slot.replace(operation)
        self._streaming = operation
        self._notify()
        return PendingReply(
            token=self._capture(),
            operation=operation,
            text=body,
            client_message_id=client_message_id,
            user_timestamp=user_message.timestamp,
            placeholder_id=placeholder.id,
        )

    async def _stream_reply(self, reply: PendingReply) -> None:
        buffer = _ReplyBuffer(
            lambda text: self._update_text(reply, text or INTERIM_TEXT),
            threshold=self._config.flush_threshold_chars,
            interval=self._config.flush_interval_seconds,
        )
        try:
            timeout = await self._receive(reply, buffer)
            await self._settle(reply, buffer, timeout)
        except OperationCancelled as ex:
            self._on_cancelled(reply, ex.reason)
        except TransportError as ex:
            if not self._is_current(reply.token):
                logger.debug(f"Ignoring stream failure for inactive thread {reply.token.thread_id}: {ex}")
                return
            logger.warning(f"Streaming failed for thread {reply.token.thread_id}: {ex}")
            self._update_text(reply, f"⚠️ streaming failed: {ex}")
            raise
        finally:
            self._slot.release(reply.operation)
            if self._streaming is reply.operation:
                self._streaming = None
            self._notify()

    async def _receive(self, reply: PendingReply, buffer: _ReplyBuffer) -> CancelReason | None:
        """Read the stream; returns the timeout reason if a watchdog cut it short."""
        timers = StreamTimers(
            lambda kind: reply.operation.interrupt(_TIMEOUT_REASONS[kind]),
            first_byte_seconds=self._config.first_byte_timeout_seconds,
            progress_seconds=self._config.progress_timeout_seconds,
        )
        try:
            await reply.operation.run(self._read_stream(reply, buffer, timers))
        except OperationCancelled as ex:
            if ex.reason not in _TIMEOUT_REASONS.values():
                raise
            return ex.reason
        finally:
            timers.clear()
            buffer.close()
        return None

    async def _read_stream(self, reply: PendingReply, buffer: _ReplyBuffer, timers: StreamTimers) -> None:
        decoder = HybridStreamDecoder()
        timers.start()
        async with self._api.open_chat_stream(
            thread_id=reply.token.thread_id,
            text=reply.text,
            client_message_id=reply.client_message_id,
            web_search=self._config.web_search,
        ) as stream:
            async for chunk in stream.chunks():
                if not self._is_current(reply.token):
                    logger.debug(f"Abandoning stream for inactive thread {reply.token.thread_id}")
                    return
                if chunk:
                    buffer.bytes_received += len(chunk)
                    timers.record_bytes()
                decoded = decoder.push(chunk)
                if decoded.metadata is not None:
                    self._record_metadata(reply, decoded.metadata)
                buffer.feed(decoded.text)
            buffer.feed(decoder.finish().text)

    async def _settle(self, reply: PendingReply, buffer: _ReplyBuffer, timeout: CancelReason | None) -> None:
        if not self._is_current(reply.token):
            logger.debug(f"Discarding reply for inactive thread {reply.token.thread_id}")
            return

        if timeout is CancelReason.FIRST_BYTE_TIMEOUT:
            self._update_text(reply, NO_RESPONSE_TEXT)
            await self._reconcile(reply)
            return
        if buffer.bytes_received == 0:
            logger.warning(f"Stream for thread {reply.token.thread_id} ended with no content")
            self._update_text(reply, EMPTY_STREAM_TEXT)
            return
        if timeout is CancelReason.STALLED or not buffer.saw_text:
            await self._reconcile(reply)
            return

        final_text = buffer.text.strip()
        if not final_text or looks_like_browsing_placeholder(final_text):
            if final_text:
                self._update_text(reply, final_text)
            await self._reconcile(reply)
            return

        logger.info(f"Reply complete for thread {reply.token.thread_id} ({len(buffer.text)} chars)")
        self._schedule_thread_refresh()

    async def _reconcile(self, reply: PendingReply) -> None:
        token = reply.token
        text = await reply.operation.run(
            self._poller.poll_for_final_answer(
                token.thread_id,
                reply.user_timestamp,
                reply.operation,
                lambda: self._is_current(token),
            )
        )
        if text is None or not self._is_current(token):
            return
        self._update_text(reply, text)
        self._schedule_thread_refresh()

    async def _fallback_reply(self, reply: PendingReply) -> None:
        if not self._is_current(reply.token):
            return
        logger.info(f"Retrying thread {reply.token.thread_id} without streaming")
        self._slot.replace(reply.operation)
        try:
            text = await reply.operation.run(
                self._api.post_chat(reply.token.thread_id, reply.text, reply.client_message_id)
            )
        except OperationCancelled as ex:
            self._on_cancelled(reply, ex.reason)
            return
        except TransportError as ex:
            logger.warning(f"Non-streaming chat failed: {ex}")
            self._update_text(reply, f"⚠️ {ex}")
            return
        finally:
            self._slot.release(reply.operation)
            self._notify()

        if text.strip():
            self._update_text(reply, text)
            self._schedule_thread_refresh()

    def _on_cancelled(self, reply: PendingReply, reason: CancelReason) -> None:
        if reason is CancelReason.THREAD_SWITCH or not self._is_current(reply.token):
            logger.debug(f"Reply for thread {reply.token.thread_id} abandoned ({reason.value})")
            return
        if reason in (CancelReason.USER, CancelReason.SUPERSEDED):
            self._update_text(reply, STOPPED_TEXT)

    # -- shared state --------------------------------------------------------

    def _capture(self) -> SessionToken:
        if self.thread_id is None:
            raise NoThreadSelectedError("No thread selected")
        return SessionToken(epoch=self._epoch, thread_id=self.thread_id)

    def _is_current(self, token: SessionToken) -> bool:
        return token.epoch == self._epoch

    def _activate(self, thread_id: str) -> None:
        self._slot.cancel(CancelReason.THREAD_SWITCH)
        self._epoch += 1
        self.thread_id = thread_id
        self.transcript = TranscriptStore()
        self.hydrating = False
        self.hydrate_error = None
        self.last_metadata = None
        logger.debug(f"Active thread is now {thread_id} (epoch {self._epoch})")
        self._notify()

    async def _hydrate(self, token: SessionToken) -> None:
        if not self._api.threads_enabled:
            return
        operation = InFlightOperation("hydrate")
        self._slot.replace(operation)
        self.hydrating = True
        self.hydrate_error = None
        self._notify()
        try:
            detail = await operation.run(self._api.get_thread(token.thread_id))
        except OperationCancelled:
            return
        except ChatRuntimeError as ex:
            if self._is_current(token):
                logger.warning(f"Failed to load thread {token.thread_id}: {ex}")
                self.hydrate_error = str(ex)
                self.transcript = TranscriptStore()
            return
        else:
            if self._is_current(token):
                self.transcript = TranscriptStore(_dedupe(detail.messages))
        finally:
            self._slot.release(operation)
            if self._is_current(token):
                self.hydrating = False
                self._notify()

    def _update_text(self, reply: PendingReply, text: str) -> None:
        if not self._is_current(reply.token):
            return
        self.transcript.update_text(reply.placeholder_id, text)
        self._notify()

    def _record_metadata(self, reply: PendingReply, metadata: dict[str, Any]) -> None:
        if not self._is_current(reply.token):
            return
        self.last_metadata = metadata
        logger.debug(f"Stream metadata keys: {sorted(metadata)}")

    def _schedule_thread_refresh(self) -> None:
        if not self._api.threads_enabled:
            return
        task = asyncio.create_task(self._refresh_threads_quietly())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_threads_quietly(self) -> None:
        try:
            await self.refresh_threads()
        except ChatRuntimeError as ex:
            logger.debug(f"Background thread refresh failed: {ex}")

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()

    async def aclose(self) -> None:
        self._slot.cancel(CancelReason.SHUTDOWN)
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
