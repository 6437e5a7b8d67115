"""Prometheus text exposition of the published snapshot over aiohttp."""

import logging
from collections import OrderedDict
from typing import Dict, List, Optional

import httpx
from aiohttp import web
from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from ..config.models import ServerConfig
from ..errors import EXIT_BIND_FAILURE, RenderError, StartupError
from ..utils.metrics import Domain, MetricSample
from .snapshot_store import Snapshot, SnapshotStore

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
SPEEDTEST_BYTES = 512 * 1024


def group_families(snapshot: Snapshot) -> "OrderedDict[str, List[MetricSample]]":
    """
    Group samples by metric name, validating each family.

    Raises:
        RenderError: If a family mixes label key sets or repeats a series
    """
    families: "OrderedDict[str, List[MetricSample]]" = OrderedDict()
    for sample in snapshot.iter_samples():
        families.setdefault(sample.name, []).append(sample)

    for name, samples in families.items():
        keys = samples[0].label_keys
        seen = set()
        for sample in samples:
            if sample.label_keys != keys:
                raise RenderError(
                    f"Metric family {name} has inconsistent labels: "
                    f"{list(keys)} vs {list(sample.label_keys)}"
                )
            series = tuple(sample.labels[k] for k in keys)
            if series in seen:
                raise RenderError(f"Duplicate series in {name}: {dict(zip(keys, series))}")
            seen.add(series)
    return families


class SnapshotCollector:
    """prometheus_client custom collector yielding one snapshot's families."""

    def __init__(self, snapshot: Snapshot):
        self.snapshot = snapshot

    def collect(self):
        try:
            for name, samples in group_families(self.snapshot).items():
                keys = list(samples[0].label_keys)
                family = GaugeMetricFamily(name, samples[0].documentation or name, labels=keys)
                for sample in samples:
                    family.add_metric(
                        [sample.labels[k] for k in keys],
                        sample.value,
                        # Stale values carry their original collection time
                        timestamp=sample.collected_at if sample.stale else None,
                    )
                yield family
        except ValueError as e:
            # prometheus_client rejects invalid metric or label names
            raise RenderError(str(e)) from e

        yield from self._self_metrics()

    def _self_metrics(self):
        generation = GaugeMetricFamily(
            "syswatch_snapshot_generation",
            "Generation number of the published snapshot",
            value=self.snapshot.generation,
        )
        last_success = GaugeMetricFamily(
            "syswatch_collector_last_success_timestamp_seconds",
            "Time of the last clean collection per domain",
            labels=["domain"],
        )
        errors = CounterMetricFamily(
            "syswatch_collector_errors",
            "Failed or partial collections per domain",
            labels=["domain"],
        )
        stale = GaugeMetricFamily(
            "syswatch_stale_samples",
            "Samples currently served from the staleness cache",
            labels=["domain"],
        )
        for domain in Domain:
            state = self.snapshot.state(domain)
            if state.last_success is not None:
                last_success.add_metric([domain.value], state.last_success)
            errors.add_metric([domain.value], state.error_count)
            stale.add_metric([domain.value], sum(1 for s in state.samples if s.stale))
        yield generation
        yield last_success
        yield errors
        yield stale


def render_snapshot(snapshot: Snapshot) -> bytes:
    """
    Render a snapshot in the Prometheus text format.

    Raises:
        RenderError: If the snapshot contains a malformed family
    """
    registry = CollectorRegistry(auto_describe=False)
    registry.register(SnapshotCollector(snapshot))
    return generate_latest(registry)


class ExpositionServer:
    """
    HTTP endpoint serving the current snapshot.

    Handlers only read the snapshot store; they never trigger or wait for
    a collection, so scrapes never serialize against collectors or each other.
    """

    def __init__(
        self,
        store: SnapshotStore,
        config: ServerConfig,
        logger: logging.Logger,
        upstream_transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize exposition server.

        Args:
            store: Snapshot store to read from
            config: Server configuration
            logger: Logger instance
            upstream_transport: httpx transport override for the upstream fetch
        """
        self.store = store
        self.config = config
        self.logger = logger.getChild("ExpositionServer")
        self._upstream_transport = upstream_transport
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.config.path, self.handle_metrics)
        app.router.add_get("/status", self.handle_status)
        app.router.add_get("/speedtest", self.handle_speedtest)
        if self.config.path != "/":
            app.router.add_get("/", self.handle_index)
        return app

    async def start(self) -> None:
        """
        Bind the listener.

        Raises:
            StartupError: If the address cannot be bound
        """
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.address, self.config.port)
        try:
            await site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            raise StartupError(
                f"Cannot bind {self.config.address}:{self.config.port}: {e}",
                EXIT_BIND_FAILURE
            ) from e

        self.logger.info(
            f"Exporter service is listening at "
            f"http://{self.config.address}:{self.config.port}{self.config.path}"
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self.logger.info("Exposition server stopped")

    def _headers(self, content_type: str = CONTENT_TYPE) -> Dict[str, str]:
        return {"Content-Type": content_type, "Access-Control-Allow-Origin": "*"}

    async def handle_metrics(self, request: web.Request) -> web.Response:
        snapshot = self.store.current()
        try:
            body = render_snapshot(snapshot)
        except RenderError as e:
            self.logger.error(f"Rendering generation {snapshot.generation} failed: {e}")
            return web.Response(status=500, text=f"Failed to render metrics: {e}")

        if self.config.combine_with_upstream:
            upstream = await self._fetch_upstream("/metrics")
            if upstream is not None:
                body = upstream + body

        return web.Response(body=body, headers=self._headers())

    async def handle_index(self, request: web.Request) -> web.Response:
        if not self.config.combine_with_upstream:
            raise web.HTTPNotFound()
        upstream = await self._fetch_upstream("/")
        if upstream is None:
            return web.Response(status=502, text="Failed to get upstream data")
        return web.Response(body=upstream, headers={"Content-Type": "text/html; charset=utf-8"})

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.Response(body=b"ok", headers=self._headers("text/plain"))

    async def handle_speedtest(self, request: web.Request) -> web.Response:
        return web.Response(
            body=bytes(SPEEDTEST_BYTES),
            headers={"Access-Control-Allow-Origin": "*", "Content-Encoding": "identity"}
        )

    async def _fetch_upstream(self, path: str) -> Optional[bytes]:
        """Fetch a page from the local upstream exporter; None on any failure."""
        url = f"http://127.0.0.1:{self.config.upstream_port}{path}"
        try:
            async with httpx.AsyncClient(transport=self._upstream_transport) as client:
                response = await client.get(url, timeout=self.config.upstream_timeout)
        except httpx.HTTPError as e:
            self.logger.warning(f"Failed to get upstream data from {url}: {e}")
            return None

        if response.is_error:
            self.logger.warning(f"Upstream {url} answered HTTP {response.status_code}")
            return None
        return response.content
