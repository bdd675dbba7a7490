import math
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from profiler.observability.metrics import InstrumentKind, Meter, canonical_labels


def test_bind_returns_same_handle_for_same_route(meter: Meter) -> None:
    counter = meter.create_instrument("page_requests", InstrumentKind.COUNTER)

    first = meter.bind(counter, {"route": "/roll"})
    second = meter.bind(counter, {"route": "/roll"})
    assert first is second

    first.add(1)
    second.add(1)
    assert first.value == 2


def test_label_order_does_not_change_the_key(meter: Meter) -> None:
    counter = meter.create_instrument("error_message_count", InstrumentKind.COUNTER)

    a = meter.bind(counter, {"route": "/x", "error_message": "/x: Not Found"})
    b = meter.bind(counter, {"error_message": "/x: Not Found", "route": "/x"})
    assert a is b
    assert canonical_labels({"b": 2, "a": 1}) == (("a", "1"), ("b", "2"))


def test_distinct_routes_get_distinct_handles(meter: Meter) -> None:
    counter = meter.create_instrument("page_requests", InstrumentKind.COUNTER)
    meter.bind(counter, {"route": "/"}).add(1)
    meter.bind(counter, {"route": "/about"}).add(3)

    values = {tuple(r.labels.items()): r.value for r in meter.collect()}
    assert values == {(("route", "/"),): 1.0, (("route", "/about"),): 3.0}


def test_instrument_registration_is_idempotent(meter: Meter) -> None:
    a = meter.create_instrument("latency", InstrumentKind.GAUGE, "Latency", "ms")
    b = meter.create_instrument("latency", InstrumentKind.GAUGE, "Latency", "ms")
    assert a is b

    with pytest.raises(ValueError):
        meter.create_instrument("latency", InstrumentKind.COUNTER, "Latency", "ms")


def test_bind_rejects_foreign_instrument(meter: Meter) -> None:
    other = Meter().create_instrument("foreign", InstrumentKind.COUNTER)
    with pytest.raises(ValueError):
        meter.bind(other)


def test_counter_ignores_negative_and_non_finite_deltas(meter: Meter) -> None:
    bound = meter.bind(meter.create_instrument("c", InstrumentKind.COUNTER))
    bound.add(5)
    bound.add(-2)
    bound.add(math.inf)
    bound.add("not a number")  # type: ignore[arg-type]
    assert bound.value == 5


def test_up_down_counter_accepts_negative_deltas(meter: Meter) -> None:
    bound = meter.bind(meter.create_instrument("inflight", InstrumentKind.UP_DOWN_COUNTER))
    bound.add(3)
    bound.add(-1)
    assert bound.value == 2


def test_gauge_record_overwrites(meter: Meter) -> None:
    bound = meter.bind(meter.create_instrument("g", InstrumentKind.GAUGE))
    bound.record(10)
    bound.record(4.5)
    bound.record(math.nan)
    bound.add(100)
    assert bound.value == 4.5


def test_collect_builds_records_in_creation_order(meter: Meter) -> None:
    counter = meter.create_instrument("page_requests", InstrumentKind.COUNTER, "Request count", "times")
    gauge = meter.create_instrument("memory_usage_mb", InstrumentKind.GAUGE, "Memory", "MB")
    meter.bind(counter, {"route": "/"}).add(1)
    meter.bind(gauge, {"route": "/"}).record(12.5)

    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    records = meter.collect(now=now)

    assert [r.name for r in records] == ["page_requests", "memory_usage_mb"]
    first = records[0].to_dict()
    assert first["kind"] == "counter"
    assert first["unit"] == "times"
    assert first["labels"] == {"route": "/"}
    assert first["timestamp"] == now.isoformat()
    assert first["resource"] == {"service.name": "test-service"}


def test_reset_zeroes_values_but_keeps_handles(meter: Meter) -> None:
    counter = meter.create_instrument("c", InstrumentKind.COUNTER)
    bound = meter.bind(counter, {"route": "/"})
    bound.add(4)

    meter.reset()

    assert meter.bind(counter, {"route": "/"}) is bound
    assert bound.value == 0


def test_concurrent_adds_from_threads_are_not_lost(meter: Meter) -> None:
    bound = meter.bind(meter.create_instrument("page_requests", InstrumentKind.COUNTER), {"route": "/"})

    def hammer(_: int) -> None:
        for _ in range(1000):
            bound.add(1)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(hammer, range(16)))

    assert bound.value == 16_000


def test_concurrent_binds_share_one_handle(meter: Meter) -> None:
    counter = meter.create_instrument("page_requests", InstrumentKind.COUNTER)

    with ThreadPoolExecutor(max_workers=8) as pool:
        handles = list(pool.map(lambda _: meter.bind(counter, {"route": "/roll"}), range(64)))

    assert all(h is handles[0] for h in handles)
