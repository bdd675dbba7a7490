"""Composable instrumentation stages.

A stage's ``on_request`` runs at request entry, in registration order. It may
register finish hooks on the context; the middleware fires those exactly once
when the response completes, again in registration order. Stages never call
the downstream app themselves.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from http import HTTPStatus
from time import perf_counter
from typing import Callable, Iterable, Protocol

from profiler.observability.instruments import RequestInstruments
from profiler.observability.metrics import Meter
from profiler.observability.resources import ProcessSampler
from profiler.observability.tracing import Tracer


Clock = Callable[[], float]


@dataclass(frozen=True)
class ResponseInfo:
    status_code: int

    @property
    def reason(self) -> str:
        try:
            return HTTPStatus(self.status_code).phrase
        except ValueError:
            return "Unknown error"


FinishHook = Callable[[ResponseInfo], None]


@dataclass
class RequestContext:
    method: str
    path: str
    url: str
    request_id: str = ""
    finish_hooks: list[tuple[str, FinishHook]] = field(default_factory=list)
    stage_name: str = ""

    def on_finish(self, hook: FinishHook) -> None:
        self.finish_hooks.append((self.stage_name, hook))


class Stage(Protocol):
    name: str

    def on_request(self, ctx: RequestContext) -> None: ...


def compute_throughput(elapsed_s: float) -> float:
    """Instantaneous requests/second for one request; 0.0 when no time elapsed."""

    if elapsed_s <= 0:
        return 0.0
    return 1.0 / elapsed_s


class RequestCounterStage:
    name = "request-counter"

    def __init__(self, meter: Meter, instruments: RequestInstruments) -> None:
        self.meter = meter
        self.instruments = instruments

    def on_request(self, ctx: RequestContext) -> None:
        self.meter.bind(self.instruments.requests, {"route": ctx.path}).add(1)


class ErrorCounterStage:
    name = "error-counter"

    def __init__(self, meter: Meter, instruments: RequestInstruments, excluded_routes: Iterable[str] = ()) -> None:
        self.meter = meter
        self.instruments = instruments
        self.excluded_routes = frozenset(excluded_routes)

    def on_request(self, ctx: RequestContext) -> None:
        route = ctx.path

        def _finished(response: ResponseInfo) -> None:
            if response.status_code < 400 or route in self.excluded_routes:
                return
            self.meter.bind(self.instruments.errors).add(1)
            self.meter.bind(self.instruments.errors_by_code, {"error_code": str(response.status_code)}).add(1)
            self.meter.bind(
                self.instruments.errors_by_message,
                {"route": route, "error_message": f"{route}: {response.reason}"},
            ).add(1)

        ctx.on_finish(_finished)


class LatencyStage:
    name = "latency"

    def __init__(self, meter: Meter, instruments: RequestInstruments, clock: Clock = perf_counter) -> None:
        self.meter = meter
        self.instruments = instruments
        self.clock = clock

    def on_request(self, ctx: RequestContext) -> None:
        start = self.clock()
        bound = self.meter.bind(self.instruments.latency, {"route": ctx.path})

        def _finished(response: ResponseInfo) -> None:
            elapsed_ms = (self.clock() - start) * 1000.0
            bound.record(max(0.0, elapsed_ms))

        ctx.on_finish(_finished)


class ThroughputStage:
    name = "throughput"

    def __init__(self, meter: Meter, instruments: RequestInstruments, clock: Clock = perf_counter) -> None:
        self.meter = meter
        self.instruments = instruments
        self.clock = clock

    def on_request(self, ctx: RequestContext) -> None:
        start = self.clock()
        bound = self.meter.bind(self.instruments.throughput, {"route": ctx.path})

        def _finished(response: ResponseInfo) -> None:
            bound.record(compute_throughput(self.clock() - start))

        ctx.on_finish(_finished)


class TracingStage:
    """Root span plus one ``processing`` child, both closed before the request
    proceeds; their duration is instrumentation overhead only."""

    name = "tracing"

    def __init__(self, tracer: Tracer) -> None:
        self.tracer = tracer

    def on_request(self, ctx: RequestContext) -> None:
        root = self.tracer.start_span(
            "incoming-request",
            attributes={"http.method": ctx.method, "http.url": ctx.url},
        )
        child = self.tracer.start_span("processing", parent=root)
        child.end()
        root.end()


# Resource stages. Each samples a process-wide counter at entry; none of these
# readings is per-request attribution, only a coarse signal tagged with the
# route that happened to trigger the sample.


class MemoryUsageStage:
    name = "memory"

    def __init__(self, meter: Meter, instruments: RequestInstruments, sampler: ProcessSampler) -> None:
        self.meter = meter
        self.instruments = instruments
        self.sampler = sampler

    def on_request(self, ctx: RequestContext) -> None:
        value = self.sampler.memory_mb()
        self.meter.bind(self.instruments.memory, {"route": ctx.path}).record(value)


class CpuUsageStage:
    name = "cpu-usage"

    def __init__(self, meter: Meter, instruments: RequestInstruments, sampler: ProcessSampler) -> None:
        self.meter = meter
        self.instruments = instruments
        self.sampler = sampler

    def on_request(self, ctx: RequestContext) -> None:
        user, system = self.sampler.cpu_seconds()
        self.meter.bind(self.instruments.cpu_usage, {"route": ctx.path, "mode": "user"}).record(user)
        self.meter.bind(self.instruments.cpu_usage, {"route": ctx.path, "mode": "system"}).record(system)


class CpuTimeStage:
    name = "cpu-time"

    def __init__(self, meter: Meter, instruments: RequestInstruments, sampler: ProcessSampler) -> None:
        self.meter = meter
        self.instruments = instruments
        self.sampler = sampler

    def on_request(self, ctx: RequestContext) -> None:
        value = self.sampler.cpu_time_ms()
        self.meter.bind(self.instruments.cpu_time, {"route": ctx.path}).record(value)


class FsOperationsStage:
    name = "fs-ops"

    def __init__(self, meter: Meter, instruments: RequestInstruments, sampler: ProcessSampler) -> None:
        self.meter = meter
        self.instruments = instruments
        self.sampler = sampler

    def on_request(self, ctx: RequestContext) -> None:
        value = self.sampler.fs_operations()
        self.meter.bind(self.instruments.fs_operations, {"route": ctx.path}).record(value)


class ContextSwitchStage:
    name = "context-switches"

    def __init__(self, meter: Meter, instruments: RequestInstruments, sampler: ProcessSampler) -> None:
        self.meter = meter
        self.instruments = instruments
        self.sampler = sampler

    def on_request(self, ctx: RequestContext) -> None:
        value = self.sampler.voluntary_context_switches()
        self.meter.bind(self.instruments.context_switches, {"route": ctx.path}).record(value)
