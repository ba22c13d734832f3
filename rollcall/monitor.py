"""Periodic eviction of peers that stopped sending heartbeats."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .directory import PeerDirectory, PeerRecord

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_MS = 10_000
DEFAULT_STALE_TIMEOUT_MS = 30_000

EvictCallback = Callable[[PeerRecord], Awaitable[None]]


class LivenessMonitor:
    """Sweeps the directory on a fixed period and evicts stale records."""

    def __init__(
        self,
        directory: PeerDirectory,
        on_evict: Optional[EvictCallback] = None,
        sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS,
        stale_timeout_ms: int = DEFAULT_STALE_TIMEOUT_MS,
    ):
        self._directory = directory
        self._on_evict = on_evict
        self._interval = sweep_interval_ms / 1000.0
        self.stale_timeout_ms = stale_timeout_ms
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep task on the running loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.info(
            "Liveness monitor started (sweep every %dms, stale after %dms)",
            int(self._interval * 1000), self.stale_timeout_ms,
        )

    async def stop(self) -> None:
        """Cancel the sweep task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Error in liveness sweep")

    async def sweep(self, now: Optional[int] = None) -> List[PeerRecord]:
        """
        Evict every record idle longer than the stale timeout.

        Each evicted record is logged and handed to on_evict individually.

        Returns:
            The evicted records.
        """
        if now is None:
            now = self._directory.clock()
        evicted = self._directory.remove_expired(now, self.stale_timeout_ms)
        for record in evicted:
            logger.info(
                "Removing stale client: %s (%s), idle %dms",
                record.name, record.id, now - record.last_seen,
            )
            if self._on_evict is not None:
                await self._on_evict(record)
        return evicted
