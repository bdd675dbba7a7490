from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Mapping

import structlog


logger = structlog.get_logger("metrics")

LabelSet = tuple[tuple[str, str], ...]


class InstrumentKind(str, Enum):
    COUNTER = "counter"
    UP_DOWN_COUNTER = "up_down_counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class Instrument:
    name: str
    kind: InstrumentKind
    description: str = ""
    unit: str = ""


@dataclass
class MetricRecord:
    """One instrument's value for one label set as of one export cycle."""

    name: str
    description: str
    unit: str
    kind: str
    labels: dict[str, str]
    value: float
    timestamp: str
    resource: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def canonical_labels(labels: Mapping[str, Any] | None) -> LabelSet:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


class BoundInstrument:
    """An instrument tied to one label set, with its own accumulator.

    ``add`` and ``record`` never raise: a bad measurement is logged and dropped.
    """

    def __init__(self, instrument: Instrument, labels: LabelSet) -> None:
        self.instrument = instrument
        self.labels = labels
        self._lock = Lock()
        self._value: float = 0.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def add(self, delta: float) -> None:
        try:
            delta = float(delta)
            if not math.isfinite(delta):
                logger.debug("measurement_dropped", instrument=self.instrument.name, reason="non_finite")
                return
            if self.instrument.kind is InstrumentKind.GAUGE:
                logger.debug("measurement_dropped", instrument=self.instrument.name, reason="add_on_gauge")
                return
            if self.instrument.kind is InstrumentKind.COUNTER and delta < 0:
                logger.debug("measurement_dropped", instrument=self.instrument.name, reason="negative_delta")
                return
            with self._lock:
                self._value += delta
        except Exception:
            logger.debug("measurement_failed", instrument=self.instrument.name, exc_info=True)

    def record(self, value: float) -> None:
        try:
            value = float(value)
            if not math.isfinite(value):
                logger.debug("measurement_dropped", instrument=self.instrument.name, reason="non_finite")
                return
            if self.instrument.kind is not InstrumentKind.GAUGE:
                logger.debug("measurement_dropped", instrument=self.instrument.name, reason="record_on_counter")
                return
            with self._lock:
                self._value = value
        except Exception:
            logger.debug("measurement_failed", instrument=self.instrument.name, exc_info=True)

    def reset(self) -> None:
        with self._lock:
            self._value = 0.0


class Meter:
    """Owns instruments and the bound-instrument cache.

    Bound handles are created at most once per (instrument, label set) and are
    kept for the meter's lifetime. There is no eviction, so label values must
    come from a bounded set (known routes, status codes).
    """

    def __init__(self, service_name: str = "") -> None:
        self.service_name = service_name
        self._lock = Lock()
        self._instruments: dict[str, Instrument] = {}
        self._bound: dict[tuple[str, LabelSet], BoundInstrument] = {}

    def create_instrument(
        self,
        name: str,
        kind: InstrumentKind,
        description: str = "",
        unit: str = "",
    ) -> Instrument:
        instrument = Instrument(name=name, kind=kind, description=description, unit=unit)
        with self._lock:
            existing = self._instruments.get(name)
            if existing is None:
                self._instruments[name] = instrument
                return instrument
        if existing != instrument:
            raise ValueError(f"instrument {name!r} already registered as {existing}")
        return existing

    def bind(self, instrument: Instrument, labels: Mapping[str, Any] | None = None) -> BoundInstrument:
        key = (instrument.name, canonical_labels(labels))
        bound = self._bound.get(key)
        if bound is not None:
            return bound
        with self._lock:
            if self._instruments.get(instrument.name) != instrument:
                raise ValueError(f"instrument {instrument.name!r} is not registered with this meter")
            bound = self._bound.get(key)
            if bound is None:
                bound = BoundInstrument(instrument, key[1])
                self._bound[key] = bound
            return bound

    def collect(self, now: datetime | None = None) -> list[MetricRecord]:
        timestamp = (now or datetime.now(timezone.utc)).isoformat()
        with self._lock:
            bound = list(self._bound.values())

        resource = {"service.name": self.service_name} if self.service_name else {}
        return [
            MetricRecord(
                name=b.instrument.name,
                description=b.instrument.description,
                unit=b.instrument.unit,
                kind=b.instrument.kind.value,
                labels=dict(b.labels),
                value=b.value,
                timestamp=timestamp,
                resource=dict(resource),
            )
            for b in bound
        ]

    def snapshot(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.collect()]

    def reset(self) -> None:
        """Zero every bound instrument (used by tests)."""

        with self._lock:
            bound = list(self._bound.values())
        for b in bound:
            b.reset()
