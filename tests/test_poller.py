import asyncio
import unittest

from marketsync.poller import Poller


class PollerTests(unittest.IsolatedAsyncioTestCase):
    async def test_failures_are_retried_on_the_next_tick(self):
        calls = []
        done = asyncio.Event()

        async def fetch():
            calls.append(len(calls))
            if len(calls) == 1:
                raise ConnectionError("offline")
            done.set()

        poller = Poller("flaky", 0.01, fetch)
        poller.start()
        await asyncio.wait_for(done.wait(), 1.0)
        await poller.stop()

        self.assertGreaterEqual(poller.runs, 2)
        self.assertEqual(poller.failures, 1)
        self.assertFalse(poller.running)

    async def test_stop_cancels_the_loop(self):
        started = asyncio.Event()

        async def fetch():
            started.set()

        poller = Poller("idle", 3600, fetch)
        poller.start()
        await asyncio.wait_for(started.wait(), 1.0)
        self.assertTrue(poller.running)

        await poller.stop()

        self.assertFalse(poller.running)
        self.assertEqual(poller.runs, 1)

    async def test_poll_once_reports_success(self):
        async def fetch():
            raise ValueError("bad payload")

        poller = Poller("once", 1, fetch)

        self.assertFalse(await poller.poll_once())
        self.assertEqual(poller.failures, 1)

    def test_interval_must_be_positive(self):
        with self.assertRaises(ValueError):
            Poller("bad", 0, lambda: None)  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
