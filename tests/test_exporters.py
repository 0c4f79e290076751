"""Tests for the exporter fan-out."""

from unittest.mock import AsyncMock, MagicMock

from loadtester.exporters import ExporterFanout
from loadtester.schema import ErrorLog, TestSummary


class SyncExporter:
    def __init__(self):
        self.summaries = []

    def export_test_summary(self, summary, test_id):
        self.summaries.append((test_id, summary.total_requests))


class TestExporterFanout:
    async def test_sync_and_async_exporters(self):
        sync = SyncExporter()
        async_exporter = MagicMock()
        async_exporter.export_test_summary = AsyncMock()
        fanout = ExporterFanout([sync, async_exporter])

        ok = await fanout.call("export_test_summary", TestSummary(total_requests=4), "t-1")

        assert ok == 2
        assert sync.summaries == [("t-1", 4)]
        async_exporter.export_test_summary.assert_awaited_once()

    async def test_missing_methods_skipped(self):
        fanout = ExporterFanout([SyncExporter()])
        assert await fanout.call("flush") == 0

    async def test_errors_swallowed(self, caplog):
        broken = MagicMock()
        broken.flush = AsyncMock(side_effect=RuntimeError("collector down"))
        sync = MagicMock()
        fanout = ExporterFanout([broken, sync])

        assert await fanout.call("flush") == 1
        sync.flush.assert_called_once_with()
        assert "flush failed" in caplog.text

    async def test_final_export_skips_empty_collections(self):
        exporter = MagicMock()
        fanout = ExporterFanout([exporter])

        await fanout.export_final("t-1", TestSummary(), [], [], [], [ErrorLog(message="x")])

        exporter.export_test_summary.assert_called_once()
        exporter.export_network_metrics.assert_not_called()
        exporter.export_drm_metrics.assert_not_called()
        exporter.export_error_metrics.assert_called_once()
        exporter.flush.assert_called_once_with()

    async def test_shutdown(self):
        exporter = MagicMock()
        await ExporterFanout([exporter]).shutdown()
        exporter.shutdown.assert_called_once_with()
