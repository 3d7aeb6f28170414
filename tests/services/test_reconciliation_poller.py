import asyncio
import unittest

from chat_stream_runtime.errors import ConfigurationError, TransportError
from chat_stream_runtime.operation import CancelReason, InFlightOperation
from chat_stream_runtime.services.reconciliation_poller import (
    ReconciliationPoller,
    latest_assistant_text,
    looks_like_browsing_placeholder,
)
from chat_stream_runtime.transcript import Message, ThreadDetail

USER_TS = 10_000


def _detail(*messages: Message) -> ThreadDetail:
    return ThreadDetail(thread_id="t1", title="T", updated_at=0, messages=list(messages))


def _assistant(message_id: str, text: str, ts: int) -> Message:
    return Message(id=message_id, timestamp=ts, role="assistant", text=text)


class _ScriptedApi:
    def __init__(self, responses: list, *, threads_enabled: bool = True):
        self.threads_enabled = threads_enabled
        self._responses = list(responses)
        self.calls = 0

    async def get_thread(self, thread_id: str) -> ThreadDetail:
        self.calls += 1
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class HelperTests(unittest.TestCase):
    def test_placeholder_patterns(self) -> None:
        self.assertTrue(looks_like_browsing_placeholder("  [browsing...] "))
        self.assertTrue(looks_like_browsing_placeholder("[Browsing the web]"))
        self.assertTrue(looks_like_browsing_placeholder("[searching...]"))
        self.assertFalse(looks_like_browsing_placeholder("browsing is fun"))

    def test_latest_assistant_text_ignores_older_and_user_messages(self) -> None:
        messages = [
            _assistant("old", "earlier answer", USER_TS - 1),
            Message(id="u", timestamp=USER_TS + 5, role="user", text="question"),
            _assistant("a1", "first", USER_TS + 1),
            _assistant("a2", "second", USER_TS + 3),
        ]
        self.assertEqual("second", latest_assistant_text(messages, USER_TS))
        self.assertEqual("", latest_assistant_text(messages[:2], USER_TS))

    def test_latest_assistant_text_last_wins_on_equal_timestamps(self) -> None:
        messages = [
            _assistant("a1", "first", USER_TS + 2),
            _assistant("a2", "second", USER_TS + 2),
            _assistant("a0", "earliest", USER_TS),
        ]
        self.assertEqual("second", latest_assistant_text(messages, USER_TS))


class ReconciliationPollerTests(unittest.TestCase):
    def _poll(self, api: _ScriptedApi, *, signal: InFlightOperation | None = None, is_current=lambda: True, deadline: float = 1.0):
        poller = ReconciliationPoller(api, interval=0.005, deadline=deadline)
        return asyncio.run(
            poller.poll_for_final_answer("t1", USER_TS, signal or InFlightOperation("poll"), is_current)
        )

    def test_waits_past_placeholder_for_real_answer(self) -> None:
        api = _ScriptedApi([
            _detail(_assistant("a", "[browsing...]", USER_TS + 1)),
            _detail(_assistant("a", "Thinking…", USER_TS + 1)),
            _detail(_assistant("a", "Paris is the capital.", USER_TS + 1)),
        ])

        self.assertEqual("Paris is the capital.", self._poll(api))
        self.assertEqual(3, api.calls)

    def test_transient_fetch_errors_are_retried(self) -> None:
        api = _ScriptedApi([
            TransportError("bad gateway", status=502),
            _detail(_assistant("a", "done", USER_TS + 1)),
        ])

        self.assertEqual("done", self._poll(api))
        self.assertEqual(2, api.calls)

    def test_missing_threads_api_skips_polling(self) -> None:
        api = _ScriptedApi([ConfigurationError("Missing API_BASE")], threads_enabled=False)

        self.assertIsNone(self._poll(api))
        self.assertEqual(0, api.calls)

    def test_any_runtime_error_is_retried_until_deadline(self) -> None:
        api = _ScriptedApi([ConfigurationError("Missing API_BASE")])

        self.assertIsNone(self._poll(api, deadline=0.05))
        self.assertGreater(api.calls, 1)

    def test_gives_up_silently_at_deadline(self) -> None:
        api = _ScriptedApi([_detail(_assistant("a", "[browsing...]", USER_TS + 1))])

        self.assertIsNone(self._poll(api, deadline=0.05))
        self.assertGreater(api.calls, 1)

    def test_cancelled_signal_stops_before_fetching(self) -> None:
        api = _ScriptedApi([_detail(_assistant("a", "done", USER_TS + 1))])
        signal = InFlightOperation("poll")
        signal.cancel(CancelReason.USER)

        self.assertIsNone(self._poll(api, signal=signal))
        self.assertEqual(0, api.calls)

    def test_stale_thread_discards_answer(self) -> None:
        api = _ScriptedApi([_detail(_assistant("a", "done", USER_TS + 1))])

        self.assertIsNone(self._poll(api, is_current=lambda: False))
        self.assertEqual(1, api.calls)


if __name__ == "__main__":
    unittest.main()
