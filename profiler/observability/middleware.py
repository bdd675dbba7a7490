from __future__ import annotations

import uuid
from time import perf_counter
from typing import Any, Callable, Iterable, Sequence

import structlog
from starlette.datastructures import MutableHeaders

from profiler.observability.stages import RequestContext, ResponseInfo, Stage


logger = structlog.get_logger("instrumentation")


def _request_url(scope: dict[str, Any]) -> str:
    path = scope.get("path", "")
    query = scope.get("query_string") or b""
    if query:
        return f"{path}?{query.decode('latin-1')}"
    return path


class InstrumentationMiddleware:
    """Runs the instrumentation stages around each HTTP request.

    Also adds request_id context, the X-Request-ID header and access logs.
    The downstream app is called exactly once; finish hooks fire exactly once
    after it returns (or raises). A failing stage or hook is logged and
    skipped for that request only.
    """

    def __init__(
        self,
        app: Callable[..., Any],
        stages: Sequence[Stage] = (),
        untracked_paths: Iterable[str] = (),
    ) -> None:
        self.app = app
        self.stages = list(stages)
        # Avoid self-observing the observability endpoints.
        self._untracked_paths = frozenset(untracked_paths)

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = str(uuid.uuid4())
        path = scope.get("path", "")
        method = scope.get("method", "")

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=path,
            method=method,
        )

        ctx = RequestContext(method=method, path=path, url=_request_url(scope), request_id=request_id)
        if path not in self._untracked_paths:
            self._run_stages(ctx)

        start = perf_counter()
        status_code: int = 500

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code

            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
                headers = MutableHeaders(scope=message)
                headers["X-Request-ID"] = request_id

            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed_ms = (perf_counter() - start) * 1000.0

            # Update metrics first so they update even if logging misbehaves.
            self._fire_finish_hooks(ctx, ResponseInfo(status_code=status_code))

            structlog.get_logger("access").info(
                "http_request",
                status_code=status_code,
                elapsed_ms=round(elapsed_ms, 2),
            )

            structlog.contextvars.clear_contextvars()

    def _run_stages(self, ctx: RequestContext) -> None:
        for stage in self.stages:
            ctx.stage_name = stage.name
            try:
                stage.on_request(ctx)
            except Exception:
                logger.warning("instrumentation_stage_failed", stage=stage.name, phase="entry", exc_info=True)
        ctx.stage_name = ""

    def _fire_finish_hooks(self, ctx: RequestContext, response: ResponseInfo) -> None:
        hooks, ctx.finish_hooks = ctx.finish_hooks, []
        for stage_name, hook in hooks:
            try:
                hook(response)
            except Exception:
                logger.warning("instrumentation_stage_failed", stage=stage_name, phase="finish", exc_info=True)
