"""
Metrics exporter fan-out.

An exporter is any object exposing some of the methods on ``MetricsExporter``;
each may be a plain function or a coroutine function. The runner never
depends on concrete exporter types and an exporter failure never reaches the
test lifecycle.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Iterable, Protocol, Sequence

from loadtester.schema import BrowserMetrics, DRMMetrics, ErrorLog, NetworkMetric, TestSummary

logger = logging.getLogger(__name__)


class MetricsExporter(Protocol):
    def export_test_summary(self, summary: TestSummary, test_id: str) -> Any: ...
    def export_browser_metrics(self, metrics: Sequence[BrowserMetrics], test_id: str) -> Any: ...
    def export_network_metrics(self, metrics: Sequence[NetworkMetric], test_id: str) -> Any: ...
    def export_drm_metrics(self, metrics: Sequence[DRMMetrics], test_id: str) -> Any: ...
    def export_error_metrics(self, errors: Sequence[ErrorLog], test_id: str) -> Any: ...
    def flush(self) -> Any: ...
    def shutdown(self) -> Any: ...


class ExporterFanout:
    def __init__(self, exporters: Iterable[Any] = ()) -> None:
        self.exporters = list(exporters)

    def __len__(self) -> int:
        return len(self.exporters)

    def add(self, exporter: Any) -> None:
        self.exporters.append(exporter)

    async def call(self, method: str, *args: Any) -> int:
        """Invoke *method* on every exporter that has it; returns how many succeeded."""
        ok = 0
        for exporter in self.exporters:
            fn = getattr(exporter, method, None)
            if not callable(fn):
                continue
            try:
                result = fn(*args)
                if inspect.isawaitable(result):
                    await result
                ok += 1
            except Exception:
                logger.exception("exporter %s.%s failed", type(exporter).__name__, method)
        return ok

    async def export_tick(
        self,
        test_id: str,
        summary: TestSummary,
        browser_metrics: Sequence[BrowserMetrics],
        network_metrics: Sequence[NetworkMetric],
    ) -> None:
        await self.call("export_test_summary", summary, test_id)
        await self.call("export_browser_metrics", list(browser_metrics), test_id)
        if network_metrics:
            await self.call("export_network_metrics", list(network_metrics), test_id)

    async def export_final(
        self,
        test_id: str,
        summary: TestSummary,
        browser_metrics: Sequence[BrowserMetrics],
        network_metrics: Sequence[NetworkMetric],
        drm_metrics: Sequence[DRMMetrics],
        errors: Sequence[ErrorLog],
    ) -> None:
        await self.export_tick(test_id, summary, browser_metrics, network_metrics)
        if drm_metrics:
            await self.call("export_drm_metrics", list(drm_metrics), test_id)
        if errors:
            await self.call("export_error_metrics", list(errors), test_id)
        await self.call("flush")

    async def shutdown(self) -> None:
        await self.call("shutdown")
