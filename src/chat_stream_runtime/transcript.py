from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, Iterable

ROLES = ("user", "assistant", "system")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    id: str
    timestamp: int
    role: str
    text: str
    client_message_id: str | None = None

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Message:
        role = str(data.get("role", "assistant"))
        if role not in ROLES:
            role = "system"
        ts = data.get("ts")
        client_id = data.get("clientMsgId")
        return cls(
            id=str(data.get("id", "")),
            timestamp=int(ts) if isinstance(ts, (int, float)) and not isinstance(ts, bool) else 0,
            role=role,
            text=str(data.get("text") or ""),
            client_message_id=str(client_id) if client_id else None,
        )

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "ts": self.timestamp, "role": self.role, "text": self.text}
        if self.client_message_id:
            data["clientMsgId"] = self.client_message_id
        return data


@dataclass(frozen=True)
class Thread:
    thread_id: str
    title: str
    created_at: int
    updated_at: int

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Thread:
        return cls(
            thread_id=str(data.get("threadId", "")),
            title=str(data.get("title") or "Untitled"),
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
        )


@dataclass(frozen=True)
class ThreadPage:
    items: list[Thread]
    next_page_token: str | None


@dataclass(frozen=True)
class ThreadDetail:
    thread_id: str
    title: str
    updated_at: int
    messages: list[Message]

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ThreadDetail:
        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raw_messages = []
        return cls(
            thread_id=str(data.get("threadId", "")),
            title=str(data.get("title") or "Untitled"),
            updated_at=int(data.get("updatedAt") or 0),
            messages=[Message.from_wire(m) for m in raw_messages if isinstance(m, dict)],
        )


class TranscriptStore:
    """Append-only, ordered message log with in-place text updates."""

    def __init__(self, messages: Iterable[Message] = ()):
        self._messages: list[Message] = []
        self._index: dict[str, int] = {}
        for message in messages:
            self.append(message)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, message: Message) -> None:
        if message.id in self._index:
            raise ValueError(f"Message already in transcript: {message.id}")
        self._index[message.id] = len(self._messages)
        self._messages.append(message)

    def update_text(self, message_id: str, text: str) -> bool:
        position = self._index.get(message_id)
        if position is None:
            return False
        self._messages[position] = replace(self._messages[position], text=text)
        return True

    def get(self, message_id: str) -> Message | None:
        position = self._index.get(message_id)
        if position is None:
            return None
        return self._messages[position]

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)
