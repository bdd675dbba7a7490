from __future__ import annotations

from typing import Callable

import structlog

from profiler.config import Settings
from profiler.observability.export import ExportDriver
from profiler.observability.exporters import FileMetricsExporter, FileSpanExporter
from profiler.observability.instruments import register_request_instruments
from profiler.observability.metrics import Meter
from profiler.observability.resources import ProcessSampler
from profiler.observability.stages import (
    ContextSwitchStage,
    CpuTimeStage,
    CpuUsageStage,
    ErrorCounterStage,
    FsOperationsStage,
    LatencyStage,
    MemoryUsageStage,
    RequestCounterStage,
    Stage,
    ThroughputStage,
    TracingStage,
)
from profiler.observability.tracing import Tracer


logger = structlog.get_logger("telemetry")


class Telemetry:
    """Owns every piece of request telemetry for one application instance.

    Building it creates both sink files, so a sink that cannot be created
    aborts startup. ``start()`` begins periodic export; ``shutdown()`` stops
    it with a final flush and closes the exporters.
    """

    def __init__(self, settings: Settings, sampler: ProcessSampler | None = None) -> None:
        self.settings = settings
        self.meter = Meter(service_name=settings.service_name)
        self.instruments = register_request_instruments(self.meter)
        self.metrics_exporter = FileMetricsExporter(settings.metrics_path)
        self.span_exporter = FileSpanExporter(settings.traces_path)
        self.tracer = Tracer(self.span_exporter, service_name=settings.service_name)
        self.sampler = sampler or ProcessSampler()
        self.driver = ExportDriver(self.meter, self.metrics_exporter, settings.export_interval_ms)
        self.stages = self.build_stages(settings.enabled_stages)

    def build_stages(self, names: list[str]) -> list[Stage]:
        factories: dict[str, Callable[[], Stage]] = {
            "request-counter": lambda: RequestCounterStage(self.meter, self.instruments),
            "error-counter": lambda: ErrorCounterStage(
                self.meter, self.instruments, self.settings.excluded_error_routes
            ),
            "latency": lambda: LatencyStage(self.meter, self.instruments),
            "tracing": lambda: TracingStage(self.tracer),
            "memory": lambda: MemoryUsageStage(self.meter, self.instruments, self.sampler),
            "throughput": lambda: ThroughputStage(self.meter, self.instruments),
            "cpu-usage": lambda: CpuUsageStage(self.meter, self.instruments, self.sampler),
            "cpu-time": lambda: CpuTimeStage(self.meter, self.instruments, self.sampler),
            "fs-ops": lambda: FsOperationsStage(self.meter, self.instruments, self.sampler),
            "context-switches": lambda: ContextSwitchStage(self.meter, self.instruments, self.sampler),
        }
        unknown = [name for name in names if name not in factories]
        if unknown:
            raise ValueError(f"unknown instrumentation stages: {', '.join(unknown)}")
        return [factories[name]() for name in names]

    async def start(self) -> None:
        self.driver.start()
        logger.info(
            "telemetry_started",
            metrics_path=str(self.metrics_exporter.path),
            traces_path=str(self.span_exporter.path),
            interval_ms=self.settings.export_interval_ms,
            stages=[stage.name for stage in self.stages],
        )

    async def shutdown(self) -> None:
        try:
            await self.driver.shutdown(flush=True)
        finally:
            try:
                await self.tracer.drain()
            finally:
                self.metrics_exporter.shutdown()
                self.span_exporter.shutdown()
        logger.info("telemetry_stopped", skipped_ticks=self.driver.skipped_ticks)
