from __future__ import annotations

from dataclasses import dataclass

from profiler.observability.metrics import Instrument, InstrumentKind, Meter


@dataclass(frozen=True)
class RequestInstruments:
    """Every instrument the middleware stages feed.

    Request and error counts are true monotonic counters. Everything sampled
    per request (latency, throughput, memory, the process-wide resource
    readings) is a last-value gauge.
    """

    requests: Instrument
    errors: Instrument
    errors_by_code: Instrument
    errors_by_message: Instrument
    latency: Instrument
    throughput: Instrument
    memory: Instrument
    cpu_usage: Instrument
    cpu_time: Instrument
    fs_operations: Instrument
    context_switches: Instrument


def register_request_instruments(meter: Meter) -> RequestInstruments:
    return RequestInstruments(
        requests=meter.create_instrument(
            "page_requests", InstrumentKind.COUNTER, "Request count", "times"
        ),
        errors=meter.create_instrument(
            "error_count", InstrumentKind.COUNTER, "Counts total occurrences of errors", "times"
        ),
        errors_by_code=meter.create_instrument(
            "error_code_count", InstrumentKind.COUNTER, "Counts occurrences of different error codes", "times"
        ),
        errors_by_message=meter.create_instrument(
            "error_message_count", InstrumentKind.COUNTER, "Counts occurrences of different error messages", "times"
        ),
        latency=meter.create_instrument(
            "request_latency_ms", InstrumentKind.GAUGE, "Latency of the last request", "ms"
        ),
        throughput=meter.create_instrument(
            "request_throughput", InstrumentKind.GAUGE, "Instantaneous requests per second", "req/s"
        ),
        memory=meter.create_instrument(
            "memory_usage_mb", InstrumentKind.GAUGE, "Process resident memory at request entry", "MB"
        ),
        cpu_usage=meter.create_instrument(
            "process_cpu_usage_seconds", InstrumentKind.GAUGE, "Cumulative process CPU time by mode", "s"
        ),
        cpu_time=meter.create_instrument(
            "process_cpu_time_ms", InstrumentKind.GAUGE, "Cumulative process CPU time (user + system)", "ms"
        ),
        fs_operations=meter.create_instrument(
            "process_fs_operations", InstrumentKind.GAUGE, "Cumulative process read + write operations", "ops"
        ),
        context_switches=meter.create_instrument(
            "process_voluntary_context_switches",
            InstrumentKind.GAUGE,
            "Cumulative voluntary context switches",
            "switches",
        ),
    )
