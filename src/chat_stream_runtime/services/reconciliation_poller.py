from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from chat_stream_runtime.api_client import ChatBackend
from chat_stream_runtime.errors import ChatRuntimeError
from chat_stream_runtime.operation import InFlightOperation
from chat_stream_runtime.transcript import Message

INTERIM_TEXT = "Thinking…"

DEFAULT_POLL_INTERVAL_SECONDS = 1.2
DEFAULT_POLL_DEADLINE_SECONDS = 60.0

_PLACEHOLDER_PREFIXES = ("[browsing", "[searching")


def looks_like_browsing_placeholder(text: str) -> bool:
    return text.strip().lower().startswith(_PLACEHOLDER_PREFIXES)


def latest_assistant_text(messages: Sequence[Message], since_timestamp: int) -> str:
    candidates = [m for m in messages if m.role == "assistant" and m.timestamp >= since_timestamp]
    if not candidates:
        return ""
    # sorted() is stable, so among equal timestamps the last one wins.
    return sorted(candidates, key=lambda m: m.timestamp)[-1].text


class _AnswerPending(Exception):
    pass


def _on_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, _AnswerPending):
        logger.debug(f"No final answer yet (attempt {retry_state.attempt_number})")
    else:
        logger.debug(f"Thread fetch failed during reconciliation: {exc}")


class ReconciliationPoller:
    """Re-reads authoritative thread history until a final assistant answer shows up."""

    def __init__(
        self,
        api: ChatBackend,
        *,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        deadline: float = DEFAULT_POLL_DEADLINE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._api = api
        self._interval = interval
        self._deadline = deadline
        self._sleep = sleep

    async def poll_for_final_answer(
        self,
        thread_id: str,
        user_timestamp: int,
        signal: InFlightOperation,
        is_current: Callable[[], bool],
    ) -> str | None:
        """Return the final answer text, or None when cancelled, stale or out of time."""
        if not self._api.threads_enabled:
            logger.debug(f"Threads API not configured; not reconciling thread {thread_id}")
            return None

        last_seen = ""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((_AnswerPending, ChatRuntimeError)),
            wait=wait_fixed(self._interval),
            stop=stop_after_delay(self._deadline),
            sleep=self._sleep,
            before_sleep=_on_retry,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if signal.cancelled:
                        return None
                    thread = await self._api.get_thread(thread_id)
                    if signal.cancelled or not is_current():
                        return None

                    text = latest_assistant_text(thread.messages, user_timestamp)
                    if (
                        text
                        and not looks_like_browsing_placeholder(text)
                        and text != INTERIM_TEXT
                        and text != last_seen
                    ):
                        logger.info(f"Reconciled final answer for thread {thread_id} ({len(text)} chars)")
                        return text
                    if text:
                        last_seen = text
                    raise _AnswerPending()
        except RetryError:
            logger.info(f"No final answer for thread {thread_id} within {self._deadline:g}s")
        return None
