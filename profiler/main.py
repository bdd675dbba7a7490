from __future__ import annotations

import importlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from profiler.api.metrics import router as metrics_router
from profiler.config import Settings, get_settings
from profiler.observability import configure_logging
from profiler.observability.context import Telemetry
from profiler.observability.middleware import InstrumentationMiddleware


def load_target_app(import_string: str) -> Any:
    """Import an ASGI app from a ``"package.module:attr"`` string."""

    module_name, sep, attr = import_string.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"TARGET_APP must look like 'package.module:attr', got {import_string!r}")
    module = importlib.import_module(module_name)
    target = module
    for part in attr.split("."):
        target = getattr(target, part)
    return target


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    # Sink creation failures propagate from here and abort startup.
    telemetry = Telemetry(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await telemetry.start()
        try:
            yield
        finally:
            await telemetry.shutdown()

    app = FastAPI(title="Request Profiler", version="0.1.0", lifespan=lifespan)
    app.state.telemetry = telemetry
    app.add_middleware(
        InstrumentationMiddleware,
        stages=telemetry.stages,
        untracked_paths=settings.untracked_paths,
    )
    app.include_router(metrics_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    if settings.target_app:
        app.mount("/", load_target_app(settings.target_app))

    return app
