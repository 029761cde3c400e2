"""HTTP surface of the health state via FastAPI.

Routes:

- ``GET /``: the current view (see
  [build_view][uptimebrotr.core.view.build_view]); ``include=a,b`` keeps
  only the listed top-level keys.
- ``GET /history``: a range query over history snapshots; a query the
  snapshotter rejects answers 404 with the message.
- ``GET /reliability``: rolling-window statistics of one target probe.
- ``GET /metrics/prometheus``: Prometheus exposition of the probe metrics.
- ``GET /health``: liveness.

The HTTP server runs as a background ``asyncio.Task`` alongside the
standard ``run_forever()`` cycle. Each ``run()`` cycle logs request
statistics and updates Prometheus metrics.

See Also:
    [HistorySnapshotter][uptimebrotr.core.history.HistorySnapshotter]:
        Backs ``/history``.
    [ReliabilityAggregator][uptimebrotr.core.aggregator.ReliabilityAggregator]:
        Backs ``/reliability``.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING, Any, ClassVar

import uvicorn
from fastapi import FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from uptimebrotr.core.base_service import BaseService
from uptimebrotr.core.history import HistoryQuery, is_immutable
from uptimebrotr.core.metrics import UP
from uptimebrotr.core.view import build_view
from uptimebrotr.exceptions import HistoryQueryError, PersistenceError
from uptimebrotr.models import ServiceName, TargetCategory
from uptimebrotr.probes import DomainSnapshotProbe, NodeProvidersProbe

from .configs import ApiConfig


if TYPE_CHECKING:
    from types import TracebackType

    from uptimebrotr.core.ledger import Ledger


_HTTP_ERROR_THRESHOLD = 400

VIEW_CACHE_CONTROL = "public, max-age=60, must-revalidate"
HISTORY_CACHE_CONTROL = "public, max-age=600, must-revalidate"
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"

# Probes whose fields live under a per-node map of the endpoint entry
NODE_PATH_KEYS: dict[str, str] = {
    DomainSnapshotProbe.PROBE: DomainSnapshotProbe.PATH_KEY,
    NodeProvidersProbe.PROBE: NodeProvidersProbe.PATH_KEY,
}


def split_csv(value: str | None) -> tuple[str, ...]:
    """``"a, b,,c"`` -> ``("a", "b", "c")``."""
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def parse_hours(value: str | None) -> tuple[float, ...]:
    """Parse a comma-separated list of positive window lengths in hours.

    Raises:
        ValueError: If an item is not a positive number.
    """
    hours = tuple(float(part) for part in split_csv(value))
    if any(h <= 0 for h in hours):
        raise ValueError(f"window hours must be positive: {value!r}")
    return hours


class Api(BaseService[ApiConfig]):
    """Read-only HTTP API over the shared ledger.

    Lifecycle:
        1. ``__aenter__``: build the FastAPI app, start uvicorn.
        2. ``run()``: log request statistics, optionally reload the state.
        3. ``__aexit__``: cancel the HTTP server task.

    Note:
        Caching is delegated to the reverse proxy through
        ``Cache-Control`` headers.
    """

    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.API
    CONFIG_CLASS: ClassVar[type[ApiConfig]] = ApiConfig

    def __init__(self, ledger: Ledger, config: ApiConfig | None = None) -> None:
        super().__init__(ledger, config)
        self._config: ApiConfig
        self._server_task: asyncio.Task[None] | None = None
        self._requests_total = 0
        self._requests_failed = 0

    async def __aenter__(self) -> Api:
        await super().__aenter__()

        app = self._build_app()
        self._server_task = asyncio.create_task(self._run_server(app))
        UP.set(1)
        self._logger.info(
            "http_server_started",
            host=self._config.host,
            port=self._config.port,
        )
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        UP.set(0)
        if self._server_task is not None:
            self._server_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._server_task
            self._server_task = None
        self._logger.info("http_server_stopped")
        await super().__aexit__(_exc_type, _exc_val, _exc_tb)

    async def run(self) -> None:
        """Log request stats, update Prometheus counters and reload the state if configured."""
        if self._server_task is not None and self._server_task.done():
            exc = self._server_task.exception() if not self._server_task.cancelled() else None
            self._logger.error("http_server_crashed", error=str(exc) if exc else "cancelled")
            raise RuntimeError("HTTP server task has stopped unexpectedly") from exc

        if self._config.reload_state:
            await asyncio.to_thread(self._ledger.load_state)

        # Snapshot and reset per-cycle counters
        total = self._requests_total
        failed = self._requests_failed
        self._requests_total = 0
        self._requests_failed = 0

        self._logger.info("cycle_stats", requests_total=total, requests_failed=failed)
        self.inc_counter("requests_total", total)
        self.inc_counter("requests_failed", failed)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def view(self, include: str | None = None) -> dict[str, Any]:
        return build_view(self._ledger.state, self._ledger.registry, split_csv(include))

    async def history(self, query: HistoryQuery) -> list[list[Any]]:
        """Run a history query off the event loop.

        Raises:
            HistoryQueryError: If the query is rejected.
            PersistenceError: If a snapshot cannot be read.
        """
        return await asyncio.to_thread(self._ledger.history.query, query)

    async def reliability(
        self,
        category: TargetCategory,
        identity: str,
        probe: str,
        *,
        hours: tuple[float, ...] = (),
        node: str | None = None,
    ) -> dict[str, Any]:
        """Reliability windows of one target probe.

        Raises:
            HistoryQueryError: If *node* is given for a probe without
                per-node fields.
            PersistenceError: If a snapshot cannot be read.
        """
        path: tuple[str, ...] = ()
        if node:
            path_key = NODE_PATH_KEYS.get(probe)
            if path_key is None:
                raise HistoryQueryError(f"probe '{probe}' has no per-node statistics")
            path = (path_key, node)
        stats = await asyncio.to_thread(
            self._ledger.aggregator.stats,
            category,
            identity,
            probe,
            path=path,
            windows=hours or None,
        )
        return {
            "category": category.value,
            "identity": identity,
            "probe": probe,
            "node": node,
            "windows": [s.to_dict() for s in stats],
        }

    # -------------------------------------------------------------------------
    # App
    # -------------------------------------------------------------------------

    def _build_app(self) -> FastAPI:
        """Construct the FastAPI application."""
        app = FastAPI(title="UptimeBrotr API")

        if self._config.cors_origins:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=self._config.cors_origins,
                allow_methods=["GET"],
                allow_headers=["*"],
            )

        # Request logging middleware
        @app.middleware("http")
        async def log_requests(request: Request, call_next: Any) -> Response:
            start = time.monotonic()
            self._logger.debug(
                "request_received",
                method=request.method,
                path=request.url.path,
                params=str(request.query_params),
            )
            try:
                response: Response = await call_next(request)
            except Exception as exc:  # HTTP request error boundary
                self._logger.error(
                    "unhandled_error",
                    error=str(exc),
                    path=request.url.path,
                )
                response = JSONResponse(
                    {"error": "Internal server error"},
                    status_code=500,
                )
            duration_ms = (time.monotonic() - start) * 1000
            self._requests_total += 1
            if response.status_code >= _HTTP_ERROR_THRESHOLD:
                self._requests_failed += 1
                self._logger.warning(
                    "request_failed",
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    duration_ms=round(duration_ms, 1),
                )
            else:
                self._logger.debug(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    duration_ms=round(duration_ms, 1),
                )
            return response

        @app.get("/health")
        async def health() -> dict[str, str]:
            return {"status": "ok"}

        @app.get("/")
        async def current_view(include: str | None = None) -> JSONResponse:
            return JSONResponse(
                self.view(include), headers={"Cache-Control": VIEW_CACHE_CONTROL}
            )

        @app.get("/history")
        async def history(
            from_: str | None = Query(default=None, alias="from"),
            to: str | None = None,
            interval: float | None = Query(default=None, ge=0),
            gateway: str | None = None,
            node: str | None = None,
            include: str | None = None,
        ) -> JSONResponse:
            query = HistoryQuery(
                from_=from_,
                to=to,
                interval=interval,
                gateway=gateway,
                node=node,
                include=split_csv(include),
            )
            try:
                points = await self.history(query)
                immutable = is_immutable(to, time.time())
            except (HistoryQueryError, PersistenceError) as e:
                return JSONResponse({"error": str(e)}, status_code=404)
            cache_control = IMMUTABLE_CACHE_CONTROL if immutable else HISTORY_CACHE_CONTROL
            return JSONResponse(points, headers={"Cache-Control": cache_control})

        @app.get("/reliability")
        async def reliability(
            category: TargetCategory,
            identity: str,
            probe: str,
            hours: str | None = None,
            node: str | None = None,
        ) -> JSONResponse:
            try:
                windows = parse_hours(hours)
            except ValueError as e:
                return JSONResponse({"error": str(e)}, status_code=400)
            try:
                body = await self.reliability(
                    category, identity, probe, hours=windows, node=node
                )
            except (HistoryQueryError, PersistenceError) as e:
                return JSONResponse({"error": str(e)}, status_code=404)
            return JSONResponse(body, headers={"Cache-Control": HISTORY_CACHE_CONTROL})

        @app.get("/metrics/prometheus")
        async def prometheus() -> Response:
            return Response(
                content=generate_latest(self._ledger.metrics.registry),
                media_type=CONTENT_TYPE_LATEST,
            )

        return app

    async def _run_server(self, app: FastAPI) -> None:
        """Run uvicorn as an asyncio server."""
        config = uvicorn.Config(
            app,
            host=self._config.host,
            port=self._config.port,
            log_level="warning",
            access_log=False,
        )
        server = uvicorn.Server(config)
        await server.serve()
