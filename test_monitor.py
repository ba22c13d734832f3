import asyncio
import unittest

from fakes import Clock, wait_until
from rollcall.directory import PeerDirectory
from rollcall.monitor import LivenessMonitor


class TestLivenessMonitor(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = Clock()
        self.directory = PeerDirectory(clock=self.clock)
        self.evicted = []

        async def on_evict(record):
            self.evicted.append(record.id)

        self.monitor = LivenessMonitor(
            self.directory, on_evict=on_evict, sweep_interval_ms=10, stale_timeout_ms=30_000,
        )

    async def asyncTearDown(self):
        await self.monitor.stop()

    async def test_sweep_evicts_past_timeout_only(self):
        self.directory.upsert("keep", "K", "x", "10.0.0.1", object())
        self.directory.upsert("drop", "D", "x", "10.0.0.2", object())
        now = self.clock.now
        self.directory.get("keep").last_seen = now - 29_999
        self.directory.get("drop").last_seen = now - 30_001

        evicted = await self.monitor.sweep(now)

        self.assertEqual([r.id for r in evicted], ["drop"])
        self.assertEqual(self.evicted, ["drop"])
        self.assertIn("keep", self.directory)

    async def test_each_evicted_record_triggers_callback(self):
        for pid in ("a", "b", "c"):
            self.directory.upsert(pid, pid, "x", "10.0.0.1", object())
        self.clock.advance(30_001)

        with self.assertLogs("rollcall.monitor", level="INFO") as logs:
            await self.monitor.sweep()

        self.assertEqual(sorted(self.evicted), ["a", "b", "c"])
        self.assertEqual(sum("Removing stale client" in line for line in logs.output), 3)

    async def test_sweep_with_nothing_stale_does_nothing(self):
        self.directory.upsert("a", "A", "x", "10.0.0.1", object())
        self.assertEqual(await self.monitor.sweep(), [])
        self.assertEqual(self.evicted, [])

    async def test_background_loop_sweeps_periodically(self):
        self.directory.upsert("a", "A", "x", "10.0.0.1", object())
        self.clock.advance(30_001)

        self.monitor.start()
        self.assertTrue(self.monitor.running)
        await wait_until(lambda: self.evicted == ["a"])

        await self.monitor.stop()
        self.assertFalse(self.monitor.running)

    async def test_loop_survives_a_failing_sweep(self):
        calls = []

        async def flaky(record):
            calls.append(record.id)
            if len(calls) == 1:
                raise RuntimeError("boom")

        monitor = LivenessMonitor(self.directory, on_evict=flaky, sweep_interval_ms=10, stale_timeout_ms=1)
        self.directory.upsert("a", "A", "x", "10.0.0.1", object())
        self.clock.advance(5)

        with self.assertLogs("rollcall.monitor", level="ERROR"):
            monitor.start()
            await wait_until(lambda: calls == ["a"])
            await asyncio.sleep(0.02)

        self.directory.upsert("b", "B", "x", "10.0.0.2", object())
        self.clock.advance(5)
        await wait_until(lambda: calls == ["a", "b"])
        await monitor.stop()


if __name__ == "__main__":
    unittest.main()
