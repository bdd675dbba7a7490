from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any

import structlog

from profiler.observability.exporters import FileSpanExporter
from profiler.observability.result import ExportResult


logger = structlog.get_logger("tracing")


class Span:
    """A timed unit of work. Exported through its tracer on the first ``end()``."""

    def __init__(
        self,
        tracer: Tracer,
        name: str,
        *,
        trace_id: str,
        parent_span_id: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        self._tracer = tracer
        self.name = name
        self.trace_id = trace_id
        self.span_id = uuid.uuid4().hex[:16]
        self.parent_span_id = parent_span_id
        self.attributes: dict[str, Any] = dict(attributes or {})
        self.start_time_ns = time.time_ns()
        self.end_time_ns: int | None = None
        self._start_perf_ns = time.perf_counter_ns()

    @property
    def ended(self) -> bool:
        return self.end_time_ns is not None

    def set_attribute(self, key: str, value: Any) -> None:
        if not self.ended:
            self.attributes[key] = value

    def end(self) -> None:
        if self.ended:
            return
        # Wall clock at start plus monotonic elapsed, so end never precedes start.
        elapsed_ns = max(0, time.perf_counter_ns() - self._start_perf_ns)
        self.end_time_ns = self.start_time_ns + elapsed_ns
        self._tracer._on_end(self)

    def __enter__(self) -> Span:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.end()

    def to_dict(self) -> dict[str, Any]:
        end = self.end_time_ns if self.end_time_ns is not None else self.start_time_ns
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "name": self.name,
            "start_time_ns": self.start_time_ns,
            "end_time_ns": end,
            "duration_ms": (end - self.start_time_ns) / 1_000_000,
            "attributes": self.attributes,
            "resource": {"service.name": self._tracer.service_name},
        }


class Tracer:
    """Creates spans and writes them to the span sink in close order.

    Inside a running event loop, closed spans are queued and a single flush
    task appends them from a worker thread, so request handling never waits on
    the file. Without a loop they are written inline.
    """

    def __init__(self, exporter: FileSpanExporter, service_name: str = "") -> None:
        self.exporter = exporter
        self.service_name = service_name
        self._pending: list[Span] = []
        self._flush_task: asyncio.Task[None] | None = None

    def start_span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
        parent: Span | None = None,
    ) -> Span:
        if parent is not None:
            return Span(
                self,
                name,
                trace_id=parent.trace_id,
                parent_span_id=parent.span_id,
                attributes=attributes,
            )
        return Span(self, name, trace_id=uuid.uuid4().hex, attributes=attributes)

    def _on_end(self, span: Span) -> None:
        self._pending.append(span)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_pending()
            return
        if self._flush_task is None or self._flush_task.done():
            self._schedule_flush(loop)

    def _schedule_flush(self, loop: asyncio.AbstractEventLoop) -> None:
        self._flush_task = loop.create_task(self._flush(), name="span-flush")
        self._flush_task.add_done_callback(self._on_flush_done)

    async def _flush(self) -> None:
        # One flush task at a time; each pass takes everything closed so far.
        while self._pending:
            batch, self._pending = self._pending, []
            await asyncio.to_thread(self.exporter.export, batch, self._on_export_done)

    def _write_pending(self) -> None:
        batch, self._pending = self._pending, []
        if batch:
            self.exporter.export(batch, self._on_export_done)

    def _on_flush_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            logger.warning("span_flush_cancelled", pending=len(self._pending))
            return
        exc = task.exception()
        if exc is not None:
            logger.error("span_flush_failed", error=str(exc))

    async def drain(self) -> None:
        """Wait for queued spans to reach the sink."""

        while True:
            task = self._flush_task
            if task is not None and not task.done():
                await asyncio.wait([task])
            elif self._pending:
                self._schedule_flush(asyncio.get_running_loop())
            else:
                return

    def _on_export_done(self, result: ExportResult) -> None:
        if not result.ok:
            logger.warning("span_export_failed", error=str(result.error))

