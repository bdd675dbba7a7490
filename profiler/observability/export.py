from __future__ import annotations

import asyncio
import contextlib

import structlog

from profiler.observability.exporters import FileMetricsExporter
from profiler.observability.metrics import Meter
from profiler.observability.result import ExportResult


logger = structlog.get_logger("export")


class ExportDriver:
    """Periodically snapshots a meter and writes it through a metrics exporter.

    Ticks run at a fixed rate on the event loop's clock. Exports never
    overlap: a tick that finds an export still in flight is skipped, and ticks
    missed while a slow export ran are dropped, not queued.
    """

    def __init__(self, meter: Meter, exporter: FileMetricsExporter, interval_ms: int) -> None:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.meter = meter
        self.exporter = exporter
        self.interval_s = interval_ms / 1000.0
        self.skipped_ticks = 0
        self._inflight: asyncio.Future[ExportResult] | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def exporting(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("export driver is shut down")
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="metrics-export-loop")

    async def tick(self) -> ExportResult | None:
        """Run one export cycle unless one is already in flight."""

        if self.exporting:
            self.skipped_ticks += 1
            logger.warning("export_tick_skipped", reason="export_in_flight", skipped_total=self.skipped_ticks)
            return None

        records = self.meter.collect()
        self._inflight = asyncio.ensure_future(asyncio.to_thread(self.exporter.export, records))
        # Shielded: cancelling the loop must not orphan a write that is still running.
        result = await asyncio.shield(self._inflight)
        self._report(result)
        return result

    def _report(self, result: ExportResult) -> None:
        if not result.ok:
            # Reported and dropped; the next cycle exports fresh state anyway.
            logger.error("export_cycle_failed", error=str(result.error))

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval_s
        while True:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            await self.tick()

            next_tick += self.interval_s
            now = loop.time()
            if next_tick <= now:
                missed = int((now - next_tick) // self.interval_s) + 1
                self.skipped_ticks += missed
                logger.warning("export_tick_skipped", reason="overrun", missed=missed, skipped_total=self.skipped_ticks)
                next_tick += missed * self.interval_s

    async def shutdown(self, flush: bool = True) -> None:
        if self._closed:
            return
        self._closed = True

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        if self._inflight is not None and not self._inflight.done():
            logger.info("export_awaiting_in_flight")
            self._report(await self._inflight)

        if flush:
            await self.tick()
        self.exporter.shutdown()
