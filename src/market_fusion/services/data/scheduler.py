"""
Periodic trigger for the live aggregation cycle and the backfill job.

Each cadence fires on its own interval. A tick never waits for the previous
run; the orchestrator's reentrancy guards skip a run that would overlap.
In-flight runs are tracked so that stop() can cancel them.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

from loguru import logger

from market_fusion.services.data.aggregator import AggregationOrchestrator


class FusionScheduler:
    """
    Runs run_cycle() and backfill() at two cadences.

    Usage:
        scheduler = FusionScheduler(orchestrator, aggregation_interval=60, backfill_interval=21600)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        orchestrator: AggregationOrchestrator,
        aggregation_interval: float = 60.0,
        backfill_interval: float = 6 * 3600.0,
        backfill_on_start: bool = True
    ):
        """
        Args:
            orchestrator: Pipeline driver
            aggregation_interval: Seconds between live cycles
            backfill_interval: Seconds between backfills
            backfill_on_start: Run a backfill immediately on start
        """
        self.orchestrator = orchestrator
        self.aggregation_interval = aggregation_interval
        self.backfill_interval = backfill_interval
        self.backfill_on_start = backfill_on_start

        self.running = False
        self._loops: Set[asyncio.Task] = set()
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        """Start both cadences (returns immediately)."""
        if self.running:
            logger.warning("FusionScheduler already running")
            return

        self.running = True
        self._loops.add(asyncio.create_task(
            self._every(self.aggregation_interval, self.orchestrator.run_cycle, "aggregation", True)
        ))
        self._loops.add(asyncio.create_task(
            self._every(self.backfill_interval, self.orchestrator.backfill, "backfill",
                        self.backfill_on_start)
        ))
        logger.info(
            f"FusionScheduler started | Aggregation every {self.aggregation_interval}s | "
            f"Backfill every {self.backfill_interval}s"
        )

    async def _every(
        self,
        interval: float,
        job: Callable[[], Awaitable],
        name: str,
        fire_immediately: bool
    ) -> None:
        if not fire_immediately:
            await asyncio.sleep(interval)

        while self.running:
            self._launch(job, name)
            await asyncio.sleep(interval)

    def _launch(self, job: Callable[[], Awaitable], name: str) -> None:
        task = asyncio.create_task(job())
        self._in_flight.add(task)
        task.add_done_callback(lambda t: self._finished(t, name))

    def _finished(self, task: asyncio.Task, name: str) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            return
        error: Optional[BaseException] = task.exception()
        if error is not None:
            logger.opt(exception=error).error(f"Scheduled {name} run failed: {error}")

    async def stop(self) -> None:
        """Stop both cadences and cancel in-flight runs."""
        self.running = False

        tasks = list(self._loops) + list(self._in_flight)
        for task in tasks:
            task.cancel()

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._loops.clear()
        self._in_flight.clear()
        logger.info("FusionScheduler stopped")

    async def run_forever(self) -> None:
        """Start and block until cancelled."""
        await self.start()
        try:
            while self.running:
                await asyncio.sleep(1.0)
        finally:
            await self.stop()
