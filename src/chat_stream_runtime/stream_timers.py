from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum

from loguru import logger

DEFAULT_FIRST_BYTE_SECONDS = 30.0
DEFAULT_PROGRESS_SECONDS = 120.0


class TimeoutKind(str, Enum):
    FIRST_BYTE = "first_byte"
    PROGRESS = "progress"


class StreamTimers:
    """First-byte and inactivity watchdogs for one streaming request.

    The first-byte timer runs from ``start()`` until the first ``record_bytes()``
    and is never re-armed afterwards. The progress timer is re-armed on every
    ``record_bytes()``. Either one firing calls ``on_timeout`` with its kind.
    """

    def __init__(
        self,
        on_timeout: Callable[[TimeoutKind], None],
        *,
        first_byte_seconds: float = DEFAULT_FIRST_BYTE_SECONDS,
        progress_seconds: float = DEFAULT_PROGRESS_SECONDS,
    ) -> None:
        self._on_timeout = on_timeout
        self._first_byte_seconds = first_byte_seconds
        self._progress_seconds = progress_seconds
        self._first_byte_handle: asyncio.TimerHandle | None = None
        self._progress_handle: asyncio.TimerHandle | None = None
        self._got_first_byte = False

    @property
    def first_byte_armed(self) -> bool:
        return self._first_byte_handle is not None

    @property
    def progress_armed(self) -> bool:
        return self._progress_handle is not None

    def start(self) -> None:
        if self._got_first_byte:
            return
        self.disarm_first_byte()
        loop = asyncio.get_running_loop()
        self._first_byte_handle = loop.call_later(self._first_byte_seconds, self._fire, TimeoutKind.FIRST_BYTE)

    def record_bytes(self) -> None:
        if not self._got_first_byte:
            self._got_first_byte = True
            self.disarm_first_byte()
        self._arm_progress()

    def disarm_first_byte(self) -> None:
        if self._first_byte_handle is not None:
            self._first_byte_handle.cancel()
            self._first_byte_handle = None

    def clear(self) -> None:
        self.disarm_first_byte()
        if self._progress_handle is not None:
            self._progress_handle.cancel()
            self._progress_handle = None

    def _arm_progress(self) -> None:
        if self._progress_handle is not None:
            self._progress_handle.cancel()
        loop = asyncio.get_running_loop()
        self._progress_handle = loop.call_later(self._progress_seconds, self._fire, TimeoutKind.PROGRESS)

    def _fire(self, kind: TimeoutKind) -> None:
        if kind is TimeoutKind.FIRST_BYTE:
            self._first_byte_handle = None
            seconds = self._first_byte_seconds
        else:
            self._progress_handle = None
            seconds = self._progress_seconds
        logger.warning(f"Stream {kind.value} timeout after {seconds:g}s")
        self._on_timeout(kind)
