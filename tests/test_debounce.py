import asyncio
import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from diffanno.debounce import SearchDebouncer


class FakeHandle:
    def __init__(self, delay, callback) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock:
    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []

    def call_later(self, delay, callback) -> FakeHandle:
        handle = FakeHandle(delay, callback)
        self.handles.append(handle)
        return handle


class TestSearchDebouncer(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.applied: list[str] = []
        self.debouncer = SearchDebouncer(self.applied.append, delay=0.15, call_later=self.clock.call_later)

    def test_only_last_query_is_applied(self):
        self.debouncer.schedule("a")
        self.debouncer.schedule("ab")
        self.debouncer.schedule("abc")
        self.assertEqual([handle.cancelled for handle in self.clock.handles], [True, True, False])
        self.assertTrue(self.debouncer.pending)

        self.clock.handles[-1].callback()
        self.assertEqual(self.applied, ["abc"])
        self.assertFalse(self.debouncer.pending)

    def test_superseded_callback_is_dropped_even_if_fired(self):
        self.debouncer.schedule("old")
        stale = self.clock.handles[0]
        self.debouncer.schedule("new")
        stale.callback()
        self.assertEqual(self.applied, [])
        self.clock.handles[-1].callback()
        self.assertEqual(self.applied, ["new"])

    def test_flush_applies_immediately(self):
        self.debouncer.schedule("query")
        self.debouncer.flush()
        self.assertEqual(self.applied, ["query"])
        self.assertTrue(self.clock.handles[0].cancelled)
        self.clock.handles[0].callback()
        self.assertEqual(self.applied, ["query"])

    def test_flush_without_pending_does_nothing(self):
        self.debouncer.flush()
        self.assertEqual(self.applied, [])

    def test_cancel_drops_pending_query(self):
        self.debouncer.schedule("query")
        self.debouncer.cancel()
        self.clock.handles[0].callback()
        self.assertEqual(self.applied, [])
        self.assertFalse(self.debouncer.pending)

    def test_zero_delay_applies_synchronously(self):
        debouncer = SearchDebouncer(self.applied.append, delay=0, call_later=self.clock.call_later)
        debouncer.schedule("now")
        self.assertEqual(self.applied, ["now"])
        self.assertEqual(self.clock.handles, [])

    def test_default_timer_uses_running_loop(self):
        applied: list[str] = []

        async def _run() -> None:
            debouncer = SearchDebouncer(applied.append, delay=0.01)
            debouncer.schedule("x")
            debouncer.schedule("xy")
            await asyncio.sleep(0.05)

        asyncio.run(_run())
        self.assertEqual(applied, ["xy"])


if __name__ == "__main__":
    unittest.main()
