from __future__ import annotations

import sys
from typing import TextIO

from chat_stream_runtime.services.reconciliation_poller import INTERIM_TEXT
from chat_stream_runtime.services.session_controller import ChatSession
from chat_stream_runtime.transcript import Message, Thread


class ConsoleView:
    """Prints the live assistant reply as the transcript grows."""

    def __init__(self, *, line_prefix: str = "assistant> ", out: TextIO | None = None):
        self._line_prefix = line_prefix
        self._out = out or sys.stdout
        self._active = False
        self._live_id: str | None = None
        self._printed = ""

    def begin_reply(self) -> None:
        self._active = True
        self._live_id = None
        self._printed = ""

    def end_reply(self, session: ChatSession) -> None:
        if not self._active:
            return
        self.render(session)
        self._active = False
        self._write("\n\n")

    def render(self, session: ChatSession) -> None:
        if not self._active:
            return
        snapshot = session.transcript.snapshot()
        if not snapshot or snapshot[-1].role != "assistant":
            return

        message = snapshot[-1]
        if message.id != self._live_id:
            self._live_id = message.id
            self._printed = ""
            self._write(self._line_prefix)

        text = message.text
        if text == self._printed or (text == INTERIM_TEXT and not self._printed):
            return
        if text.startswith(self._printed):
            self._write(text[len(self._printed):])
        else:
            # Placeholder overwritten (poller answer, stop or error): reprint on a new line.
            self._write(f"\n{self._line_prefix}{text}")
        self._printed = text

    def print_history(self, messages: tuple[Message, ...]) -> None:
        for message in messages:
            prefix = "you> " if message.role == "user" else self._line_prefix
            self._write(f"{prefix}{message.text}\n")
        if messages:
            self._write("\n")

    def print_threads(self, threads: list[Thread], active_thread_id: str | None) -> None:
        if not threads:
            self._write(f"{self._line_prefix}No threads.\n")
            return
        for thread in threads:
            marker = "*" if thread.thread_id == active_thread_id else " "
            self._write(f"{self._line_prefix}{marker} {thread.title} (id={thread.thread_id}, updated={thread.updated_at})\n")

    def print_line(self, text: str) -> None:
        self._write(f"{self._line_prefix}{text}\n")

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()
