from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from profiler.config import Settings, get_settings
from profiler.main import create_app
from profiler.observability.instruments import RequestInstruments, register_request_instruments
from profiler.observability.metrics import Meter
from profiler.observability.stages import RequestContext, ResponseInfo


class FakeSampler:
    """Deterministic stand-in for ProcessSampler; ``broken`` readings raise."""

    def __init__(self, broken: set[str] | None = None) -> None:
        self.broken = broken or set()

    def _check(self, name: str) -> None:
        if name in self.broken:
            raise AttributeError(f"{name} is not supported on this platform")

    def memory_mb(self) -> float:
        self._check("memory_mb")
        return 64.0

    def cpu_seconds(self) -> tuple[float, float]:
        self._check("cpu_seconds")
        return 1.5, 0.5

    def cpu_time_ms(self) -> float:
        self._check("cpu_time_ms")
        return 2000.0

    def fs_operations(self) -> int:
        self._check("fs_operations")
        return 42

    def voluntary_context_switches(self) -> int:
        self._check("voluntary_context_switches")
        return 7


class FakeClock:
    def __init__(self, *readings: float) -> None:
        self.readings = list(readings)

    def __call__(self) -> float:
        return self.readings.pop(0)


def run_request(stages, path: str = "/", status_code: int = 200, method: str = "GET") -> RequestContext:
    """Drive stages the way the middleware does, without an ASGI app."""

    ctx = RequestContext(method=method, path=path, url=path)
    for stage in stages:
        ctx.stage_name = stage.name
        stage.on_request(ctx)
    for _, hook in ctx.finish_hooks:
        hook(ResponseInfo(status_code=status_code))
    return ctx


def read_jsonl(path: Path) -> list[str]:
    return path.read_text(encoding="utf-8").splitlines()


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("METRICS_LOG_PATH", str(tmp_path / "metrics" / "metrics.log"))
    monkeypatch.setenv("TRACES_LOG_PATH", str(tmp_path / "traces" / "tracing.log"))
    monkeypatch.setenv("SERVICE_NAME", "test-service")
    monkeypatch.delenv("TARGET_APP", raising=False)
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def meter() -> Meter:
    return Meter(service_name="test-service")


@pytest.fixture
def instruments(meter: Meter) -> RequestInstruments:
    return register_request_instruments(meter)


@pytest.fixture
def app(settings: Settings):
    return create_app(settings)


@pytest.fixture
async def api_client(app) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.telemetry.tracer.drain()
