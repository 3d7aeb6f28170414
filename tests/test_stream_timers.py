import asyncio
import unittest

from chat_stream_runtime.stream_timers import StreamTimers, TimeoutKind


class StreamTimersTests(unittest.TestCase):
    def _timers(self, fired: list[TimeoutKind], *, first_byte: float, progress: float) -> StreamTimers:
        return StreamTimers(fired.append, first_byte_seconds=first_byte, progress_seconds=progress)

    def test_only_first_byte_timer_fires_without_bytes(self) -> None:
        fired: list[TimeoutKind] = []

        async def scenario() -> None:
            timers = self._timers(fired, first_byte=0.02, progress=0.01)
            timers.start()
            self.assertTrue(timers.first_byte_armed)
            self.assertFalse(timers.progress_armed)
            await asyncio.sleep(0.1)
            timers.clear()

        asyncio.run(scenario())
        self.assertEqual([TimeoutKind.FIRST_BYTE], fired)

    def test_only_progress_timer_fires_after_first_byte(self) -> None:
        fired: list[TimeoutKind] = []

        async def scenario() -> None:
            timers = self._timers(fired, first_byte=0.03, progress=0.06)
            timers.start()
            timers.record_bytes()
            self.assertFalse(timers.first_byte_armed)
            self.assertTrue(timers.progress_armed)
            await asyncio.sleep(0.15)
            timers.clear()

        asyncio.run(scenario())
        self.assertEqual([TimeoutKind.PROGRESS], fired)

    def test_progress_timer_is_rearmed_by_each_byte(self) -> None:
        fired: list[TimeoutKind] = []

        async def scenario() -> None:
            timers = self._timers(fired, first_byte=1.0, progress=0.08)
            timers.start()
            for _ in range(5):
                timers.record_bytes()
                await asyncio.sleep(0.02)
            self.assertEqual([], fired)
            await asyncio.sleep(0.2)
            timers.clear()

        asyncio.run(scenario())
        self.assertEqual([TimeoutKind.PROGRESS], fired)

    def test_start_after_first_byte_does_not_rearm_first_byte(self) -> None:
        fired: list[TimeoutKind] = []

        async def scenario() -> None:
            timers = self._timers(fired, first_byte=0.01, progress=1.0)
            timers.record_bytes()
            timers.start()
            self.assertFalse(timers.first_byte_armed)
            await asyncio.sleep(0.05)
            timers.clear()

        asyncio.run(scenario())
        self.assertEqual([], fired)

    def test_clear_is_idempotent(self) -> None:
        fired: list[TimeoutKind] = []

        async def scenario() -> None:
            timers = self._timers(fired, first_byte=0.01, progress=0.01)
            timers.start()
            timers.clear()
            timers.clear()
            timers.disarm_first_byte()
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        self.assertEqual([], fired)


if __name__ == "__main__":
    unittest.main()
