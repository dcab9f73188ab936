"""HTTP front end of the segment mirror."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import re
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import uvicorn
from dotenv import load_dotenv
from sqlalchemy import create_engine
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import BaseRoute, Match, Route
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config import Config, ConfigError
from .importer import CsvImporter
from .models import HealthResponse, Sponsor
from .segments import DEFAULT_CATEGORIES, parse_categories
from .store import SegmentStore

log = logging.getLogger(__name__)

HASH_RE = re.compile(r"[0-9a-f]{4}")
ID_RE = re.compile(r"[a-zA-Z0-9_-]{6,11}")

METRICS_PATH = "/metrics"
METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
DEFAULT_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)
_UNMATCHED = "unmatched"
_UPSTREAM_TIMEOUT = 30.0


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _labels(pairs: Sequence[tuple[str, str]]) -> str:
    return ",".join(f'{name}="{_escape_label(value)}"' for name, value in pairs)


@dataclass
class _Series:
    buckets: list[int]
    count: int = 0
    total: float = 0.0


@dataclass
class RequestMetrics:
    """Request counters and latency histograms in Prometheus text format."""

    buckets: tuple[float, ...] = DEFAULT_BUCKETS
    _series: dict[tuple[str, str, int], _Series] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, method: str, path: str, status: int, seconds: float) -> None:
        """Count one finished request."""
        key = (method, path, int(status))
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = self._series[key] = _Series(buckets=[0] * len(self.buckets))
            series.count += 1
            series.total += seconds
            for index, bound in enumerate(self.buckets):
                if seconds <= bound:
                    series.buckets[index] += 1

    def render(self, namespace: str = "api") -> str:
        """Exposition text for every series recorded so far."""
        duration = f"{namespace}_http_requests_duration_seconds"
        total = f"{namespace}_http_requests_total"
        with self._lock:
            snapshot = sorted(
                (key, _Series(list(s.buckets), s.count, s.total))
                for key, s in self._series.items()
            ) if self._series else []

        lines = [
            f"# HELP {duration} HTTP request duration in seconds for all requests",
            f"# TYPE {duration} histogram",
        ]
        for (method, path, status), series in snapshot:
            base = [("endpoint", path), ("method", method), ("status", str(status))]
            for bound, hits in zip(self.buckets, series.buckets):
                lines.append(f"{duration}_bucket{{{_labels([*base, ('le', f'{bound:g}')])}}} {hits}")
            lines.append(f"{duration}_bucket{{{_labels([*base, ('le', '+Inf')])}}} {series.count}")
            lines.append(f"{duration}_sum{{{_labels(base)}}} {series.total!r}")
            lines.append(f"{duration}_count{{{_labels(base)}}} {series.count}")
        lines.append(f"# HELP {total} Total number of HTTP requests")
        lines.append(f"# TYPE {total} counter")
        for (method, path, status), series in snapshot:
            base = [("endpoint", path), ("method", method), ("status", str(status))]
            lines.append(f"{total}{{{_labels(base)}}} {series.count}")
        return "\n".join(lines) + "\n"


class _Instrumentation:
    """Logs every request and feeds its outcome into the metrics."""

    def __init__(self, app: ASGIApp, metrics: RequestMetrics, routes: Sequence[BaseRoute]) -> None:
        self.app = app
        self.metrics = metrics
        self.routes = routes

    def _endpoint(self, scope: Scope) -> str:
        partial: str | None = None
        for route in self.routes:
            match, _ = route.matches(scope)
            path = getattr(route, "path", None)
            if path is None:
                continue
            if match is Match.FULL:
                return path
            if match is Match.PARTIAL and partial is None:
                partial = path
        return partial if partial is not None else _UNMATCHED

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed = time.perf_counter() - start
            client = scope.get("client")
            peer = client[0] if client else "-"
            log.info('%s "%s %s" %d %.6f', peer, scope["method"], scope["path"], status, elapsed)
            if scope["path"] != METRICS_PATH:
                self.metrics.record(scope["method"], self._endpoint(scope), status, elapsed)


def _openapi() -> dict[str, Any]:
    def op(tag: str, summary: str) -> dict[str, Any]:
        return {"get": {"tags": [tag], "summary": summary}}

    return {
        "openapi": "3.0.3",
        "info": {
            "title": "SponsorBlock Mirror API",
            "description": "A mirror of the SponsorBlock API for retrieving video sponsor segments",
            "version": "1.0.0",
            "contact": {"name": "API Support"},
        },
        "tags": [
            {"name": "Skip Segments", "description": "SponsorBlock segment retrieval endpoints"},
            {"name": "User Info", "description": "User information endpoints (mocked for ReVanced compatibility)"},
            {"name": "Health", "description": "Service health monitoring endpoints"},
            {"name": "Metrics", "description": "Prometheus metrics endpoints"},
        ],
        "paths": {
            "/api/skipSegments/{hash}": op("Skip Segments", "Sponsors by hashed video ID prefix"),
            "/api/skipSegments": op("Skip Segments", "Segments for one video ID"),
            "/api/isUserVIP": op("User Info", "User VIP status"),
            "/api/userInfo": op("User Info", "User information and statistics"),
            "/health": op("Health", "Service health"),
            METRICS_PATH: op("Metrics", "Prometheus metrics in text format"),
        },
    }


def create_app(
    store: SegmentStore,
    upstream: str | None = None,
    metrics_namespace: str = "api",
) -> Starlette:
    """Build the ASGI application.

    When the local database has nothing for a request, the query is passed on
    to the ``upstream`` server; with no upstream an empty list is returned.
    """
    metrics = RequestMetrics()

    async def fallback(path: str, params: dict[str, str]) -> Response:
        if upstream is None:
            return JSONResponse([])
        try:
            async with httpx.AsyncClient(
                base_url=upstream, timeout=_UPSTREAM_TIMEOUT
            ) as client:
                reply = await client.get(path, params=params)
        except httpx.HTTPError as exc:
            log.error("Upstream request failed: %s", exc)
            return PlainTextResponse("Upstream server unavailable", status_code=502)
        return Response(reply.content, media_type="application/json")

    async def skip_segments(request: Request) -> Response:
        video_hash = request.path_params["hash"].lower()
        raw = request.query_params.get("categories")
        if not HASH_RE.fullmatch(video_hash):
            return PlainTextResponse(
                "Hash prefix does not match format requirements.", status_code=400
            )
        try:
            categories = parse_categories(raw)
        except ValueError as exc:
            return PlainTextResponse(str(exc), status_code=400)

        sponsors: list[Sponsor] = await run_in_threadpool(
            store.find_by_hash_prefix, video_hash, categories
        )
        if not sponsors:
            return await fallback(
                f"/api/skipSegments/{video_hash}",
                {"categories": DEFAULT_CATEGORIES if raw is None else raw},
            )
        return JSONResponse([sponsor.to_dict() for sponsor in sponsors])

    async def skip_segments_by_id(request: Request) -> Response:
        video_id = request.query_params.get("videoID")
        if video_id is None:
            return PlainTextResponse("videoID parameter is required", status_code=400)
        raw = request.query_params.get("categories")
        if not ID_RE.fullmatch(video_id):
            return PlainTextResponse(
                "videoID does not match format requirements", status_code=400
            )
        try:
            categories = parse_categories(raw)
        except ValueError as exc:
            return PlainTextResponse(str(exc), status_code=400)

        sponsors: list[Sponsor] = await run_in_threadpool(
            store.find_by_video_id, video_id, categories
        )
        if not sponsors:
            return await fallback(
                "/api/skipSegments",
                {
                    "videoID": video_id,
                    "categories": DEFAULT_CATEGORIES if raw is None else raw,
                },
            )
        return JSONResponse([segment.to_dict() for segment in sponsors[0].segments])

    async def fake_is_user_vip(request: Request) -> Response:
        return JSONResponse({"hashedUserID": "", "vip": False})

    async def fake_user_info(request: Request) -> Response:
        return JSONResponse(
            {
                "userID": "",
                "userName": "",
                "minutesSaved": 0,
                "segmentCount": 0,
                "viewCount": 0,
            }
        )

    async def health_check(request: Request) -> Response:
        database = await run_in_threadpool(store.ping)
        overall = "healthy" if database.healthy else "unhealthy"
        report = HealthResponse(
            status=overall,
            timestamp=datetime.now(timezone.utc).isoformat(),
            database=database,
        )
        return JSONResponse(report.to_dict(), status_code=200 if database.healthy else 503)

    async def metrics_endpoint(request: Request) -> Response:
        return Response(metrics.render(metrics_namespace), media_type=METRICS_CONTENT_TYPE)

    async def openapi(request: Request) -> Response:
        return JSONResponse(_openapi())

    routes: list[BaseRoute] = [
        Route("/health", health_check, methods=["GET"]),
        Route("/api/skipSegments/{hash}", skip_segments, methods=["GET"]),
        Route("/api/skipSegments", skip_segments_by_id, methods=["GET"]),
        Route("/api/isUserVIP", fake_is_user_vip, methods=["GET"]),
        Route("/api/userInfo", fake_user_info, methods=["GET"]),
        Route(METRICS_PATH, metrics_endpoint, methods=["GET"]),
        Route("/api-docs/openapi.json", openapi, methods=["GET"]),
    ]
    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(_Instrumentation, metrics=metrics, routes=routes),
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["*"],
                allow_headers=["*"],
                allow_credentials=True,
            ),
        ],
    )
    app.state.metrics = metrics
    return app


_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": logging.CRITICAL + 10,
}


def _configure_logging(spec: str) -> None:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for directive in filter(None, (part.strip() for part in spec.split(","))):
        name, sep, level = directive.partition("=")
        if not sep:
            name, level = "", name
        value = _LEVELS.get(level.strip().lower())
        if value is None:
            continue
        logging.getLogger(name.strip() or None).setLevel(value)


def _engine_url(database_url: str) -> str:
    if database_url.startswith("postgres://"):
        return "postgresql://" + database_url[len("postgres://"):]
    return database_url


async def _serve(app: Starlette, importer: CsvImporter, config: Config) -> None:
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.server_host, port=config.server_port, log_config=None)
    )
    task = asyncio.create_task(importer.run(config.check_interval()))
    try:
        await server.serve()
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


def main(argv: Sequence[str] | None = None) -> int:
    """Start the mirror server and its CSV importer."""
    parser = argparse.ArgumentParser(
        prog="segmirror", description="Serve skip segments from a mirrored database."
    )
    parser.add_argument("--env-file", default=".env", help="file of environment settings")
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)
    try:
        config = Config.from_env()
    except ConfigError as exc:
        parser.exit(2, f"segmirror: {exc}\n")

    _configure_logging(config.log_level)
    log.debug("Database connection string: %s", config.database_url)
    log.debug("Server will bind to: %s", config.server_bind_address())

    engine = create_engine(_engine_url(config.database_url), pool_pre_ping=True)
    store = SegmentStore(engine)
    store.create_schema()
    importer = CsvImporter(engine, config.csv_path, config.file_check_interval())
    app = create_app(store, os.environ.get("UPSTREAM_URL"), config.metrics_namespace)

    log.info("Starting server on %s", config.server_bind_address())
    asyncio.run(_serve(app, importer, config))
    return 0