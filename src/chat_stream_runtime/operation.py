from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from enum import Enum
from typing import Any, TypeVar

from loguru import logger

T = TypeVar("T")


class CancelReason(str, Enum):
    USER = "user"
    SUPERSEDED = "superseded"
    THREAD_SWITCH = "thread_switch"
    FIRST_BYTE_TIMEOUT = "first_byte_timeout"
    STALLED = "stalled"
    SHUTDOWN = "shutdown"


class OperationCancelled(Exception):
    """Raised out of ``InFlightOperation.run`` when we cancelled the step ourselves."""

    def __init__(self, reason: CancelReason):
        self.reason = reason
        super().__init__(f"operation cancelled ({reason.value})")


class InFlightOperation:
    """Cancellation handle for one logical network operation.

    Each awaited step runs as its own task so that cancelling the handle stops
    whatever the step is waiting on. ``cancel`` ends the whole operation;
    ``interrupt`` aborts only the step that is running now.
    """

    def __init__(self, label: str):
        self.label = label
        self.reason: CancelReason | None = None
        self._task: asyncio.Future[Any] | None = None
        self._interrupt_reason: CancelReason | None = None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: CancelReason) -> None:
        if self.reason is None:
            self.reason = reason
            logger.debug(f"Cancelling {self.label} operation: {reason.value}")
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def interrupt(self, reason: CancelReason) -> None:
        if self._task is None or self._task.done():
            return
        self._interrupt_reason = reason
        self._task.cancel()

    async def run(self, coro: Coroutine[Any, Any, T]) -> T:
        if self.reason is not None:
            coro.close()
            raise OperationCancelled(self.reason)

        task = asyncio.ensure_future(coro)
        self._task = task
        self._interrupt_reason = None
        try:
            return await task
        except asyncio.CancelledError:
            reason = self.reason or self._interrupt_reason
            caller = asyncio.current_task()
            if reason is None or not task.cancelled() or (caller is not None and caller.cancelling()):
                raise
            raise OperationCancelled(reason) from None
        finally:
            self._task = None
            self._interrupt_reason = None


class OperationSlot:
    """Holds at most one in-flight operation; installing a new one cancels the old."""

    def __init__(self) -> None:
        self._current: InFlightOperation | None = None

    @property
    def current(self) -> InFlightOperation | None:
        return self._current

    @property
    def busy(self) -> bool:
        return self._current is not None

    def replace(self, operation: InFlightOperation, reason: CancelReason = CancelReason.SUPERSEDED) -> None:
        previous = self._current
        self._current = operation
        if previous is not None and previous is not operation:
            previous.cancel(reason)

    def cancel(self, reason: CancelReason) -> bool:
        operation = self._current
        if operation is None:
            return False
        self._current = None
        operation.cancel(reason)
        return True

    def release(self, operation: InFlightOperation) -> None:
        if self._current is operation:
            self._current = None
