"""Tests for the test runner (session orchestration)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeLauncher, wait_for
from loadtester.browser_manager import BrowserPool
from loadtester.events import EventType
from loadtester.exceptions import BrowserLaunchError, TestStateError
from loadtester.models import RunState, SessionStatus
from loadtester.schema import DRMConfiguration, NetworkMetric, ResourceLimits, TestConfiguration
from loadtester.session_manager import TestRunner


# ── Fixtures ──


def _config(**overrides):
    values = dict(
        concurrent_users=3,
        test_duration=0,
        ramp_up_time=0,
        streaming_url="https://stream.example.com/watch",
        resource_limits=ResourceLimits(max_concurrent_instances=5),
    )
    values.update(overrides)
    return TestConfiguration(**values)


@pytest.fixture
def runner_factory(events):
    def _make(launcher=None, acquire_timeout=1.0, exporters=()):
        launcher = launcher or FakeLauncher()

        def pool_factory(config, test_id):
            limits = config.resource_limits
            return BrowserPool(
                max_instances=limits.max_concurrent_instances,
                min_instances=min(2, config.concurrent_users),
                resource_limits=limits,
                events=events,
                test_id=test_id,
                monitor_interval=0,
                acquire_timeout=acquire_timeout,
                launcher=launcher,
            )

        runner = TestRunner(
            exporters,
            events=events,
            pool_factory=pool_factory,
            monitoring_interval=0,
            idle_sweep_interval=0,
            navigation_timeout=5,
        )
        runner.launcher = launcher
        return runner

    return _make


def _of(seen, type_):
    return [e for e in seen if e.type is type_]


def _statuses(runner):
    return [s.status for s in runner.sessions.values()]


async def _all_active(runner):
    await wait_for(lambda: all(st is SessionStatus.ACTIVE for st in _statuses(runner)))


# ── Start / stop ──


class TestStartStop:
    async def test_start_returns_id_and_starts_every_session(self, runner_factory, seen):
        runner = runner_factory()
        test_id = await runner.start_test(_config(concurrent_users=3))

        assert runner.is_test_running()
        assert runner.get_test_id() == test_id
        assert _of(seen, EventType.TEST_STARTED)[0].test_id == test_id

        await _all_active(runner)
        started = _of(seen, EventType.SESSION_STARTED)
        assert len(started) == 3
        assert len({e.data["instanceId"] for e in started}) == 3
        await wait_for(lambda: _of(seen, EventType.RAMP_UP_COMPLETED))
        assert _of(seen, EventType.RAMP_UP_COMPLETED)[0].data["activeSessions"] == 3

        await runner.stop_test()

    async def test_start_while_running_is_rejected(self, runner_factory):
        runner = runner_factory()
        await runner.start_test(_config())
        with pytest.raises(TestStateError, match="Test is already running"):
            await runner.start_test(_config())
        await runner.stop_test()

    async def test_stop_twice(self, runner_factory, seen):
        runner = runner_factory()
        await runner.start_test(_config(concurrent_users=2))
        await _all_active(runner)

        results = await runner.stop_test()
        assert results.summary.total_requests >= 0
        assert results.test_id == runner.get_test_id()
        assert len(_of(seen, EventType.SESSION_COMPLETED)) == 2
        assert len(_of(seen, EventType.TEST_COMPLETED)) == 1
        assert runner.state is RunState.COMPLETED

        with pytest.raises(TestStateError, match="No test is currently running"):
            await runner.stop_test()

    async def test_stop_without_test(self, runner_factory):
        with pytest.raises(TestStateError, match="No test is currently running"):
            await runner_factory().stop_test()

    async def test_stop_releases_instances_and_shuts_pool(self, runner_factory):
        runner = runner_factory()
        await runner.start_test(_config(concurrent_users=2))
        await _all_active(runner)

        results = await runner.stop_test()

        for instance in runner.launcher.launched:
            instance.browser.close.assert_awaited()
        assert {m.instance_id for m in results.browser_metrics} == {i.id for i in runner.launcher.launched}
        assert all(st is SessionStatus.COMPLETED for st in _statuses(runner))

    async def test_pool_failure_fails_the_test(self, runner_factory, seen):
        runner = runner_factory(launcher=FakeLauncher(error=RuntimeError("no chromium")))

        with pytest.raises(BrowserLaunchError):
            await runner.start_test(_config())

        assert runner.state is RunState.FAILED
        assert not runner.is_test_running()
        assert "no chromium" in _of(seen, EventType.TEST_FAILED)[0].data["error"]
        assert not _of(seen, EventType.SESSION_STARTED)

    async def test_auto_stop_after_duration(self, runner_factory, seen):
        runner = runner_factory()
        await runner.start_test(_config(concurrent_users=2, test_duration=0.1))

        await wait_for(lambda: runner.state is RunState.COMPLETED)

        assert len(_of(seen, EventType.SESSION_COMPLETED)) == 2
        assert len(_of(seen, EventType.TEST_COMPLETED)) == 1
        assert runner.get_results() is not None
        with pytest.raises(TestStateError):
            await runner.stop_test()

    async def test_duration_counts_from_test_start_not_ramp_up(self, runner_factory, seen):
        runner = runner_factory()
        await runner.start_test(_config(concurrent_users=2, test_duration=0.5, ramp_up_time=1.0))

        await wait_for(lambda: runner.state is RunState.COMPLETED, timeout=3.0)

        (started,) = _of(seen, EventType.TEST_STARTED)
        (completed,) = _of(seen, EventType.TEST_COMPLETED)
        took = (completed.timestamp - started.timestamp).total_seconds()
        assert 0.45 <= took < 0.9

    async def test_concurrent_stops_share_one_shutdown(self, runner_factory, seen):
        runner = runner_factory()
        await runner.start_test(_config(concurrent_users=3))
        await _all_active(runner)

        first = asyncio.create_task(runner.stop_test())
        await asyncio.sleep(0)
        second = await runner.stop_test()

        assert await first is second
        assert len(_of(seen, EventType.TEST_COMPLETED)) == 1
        assert len(_of(seen, EventType.SESSION_COMPLETED)) == 3
        with pytest.raises(TestStateError, match="No test is currently running"):
            await runner.stop_test()

    async def test_remaining_time_ignores_ramp_up(self, runner_factory):
        runner = runner_factory()
        await runner.start_test(_config(concurrent_users=1, test_duration=5, ramp_up_time=30))

        data = runner.get_monitoring_data()
        assert 4 < data.remaining_time <= 5
        await runner.stop_test()


# ── Ramp-up ──


class TestRampUp:
    async def test_sessions_staggered_across_ramp_up(self, runner_factory, seen):
        runner = runner_factory()
        await runner.start_test(_config(concurrent_users=4, ramp_up_time=0.4))

        await asyncio.sleep(0.05)
        assert len(_of(seen, EventType.SESSION_STARTED)) < 4

        await _all_active(runner)
        started = _of(seen, EventType.SESSION_STARTED)
        assert [e.data["index"] for e in started] == [0, 1, 2, 3]
        spread = (started[-1].timestamp - started[0].timestamp).total_seconds()
        assert spread >= 0.25
        await runner.stop_test()

    async def test_never_more_active_than_max_instances(self, runner_factory, seen):
        runner = runner_factory(acquire_timeout=0.2)
        await runner.start_test(_config(
            concurrent_users=3,
            resource_limits=ResourceLimits(max_concurrent_instances=2),
        ))

        await wait_for(lambda: SessionStatus.FAILED in _statuses(runner))
        assert runner.pool.get_pool_status()["active_instances"] <= 2
        (failed,) = _of(seen, EventType.SESSION_FAILED)
        assert "Timeout waiting for available browser instance" in failed.data["error"]
        assert _statuses(runner).count(SessionStatus.ACTIVE) == 2
        await runner.stop_test()

    async def test_ramp_up_completes_once_every_startup_settles(self, runner_factory, seen):
        runner = runner_factory(launcher=FakeLauncher(goto_error=RuntimeError("net::ERR_FAILED")))
        await runner.start_test(_config(concurrent_users=2))

        await wait_for(lambda: _of(seen, EventType.RAMP_UP_COMPLETED))

        (ramp,) = _of(seen, EventType.RAMP_UP_COMPLETED)
        assert ramp.data["failedSessions"] == 2
        assert ramp.data["activeSessions"] == 0
        assert all(s.ready.is_set() for s in runner.sessions.values())
        await runner.stop_test()


# ── Session failures ──


class TestSessionFailures:
    async def test_disconnect_fails_only_that_session(self, runner_factory, seen):
        runner = runner_factory()
        await runner.start_test(_config(concurrent_users=3))
        await _all_active(runner)

        victim = list(runner.sessions.values())[1]
        await runner.pool._handle_disconnect(victim.instance.id)

        assert victim.status is SessionStatus.FAILED
        assert victim.errors[-1].message == "Browser instance disconnected"
        (failed,) = _of(seen, EventType.SESSION_FAILED)
        assert failed.data["sessionId"] == victim.id

        results = await runner.stop_test()
        completed = {e.data["sessionId"] for e in _of(seen, EventType.SESSION_COMPLETED)}
        assert completed == {s.id for s in runner.sessions.values() if s is not victim}
        assert any(e.message == "Browser instance disconnected" for e in results.errors)

    async def test_resource_recycle_of_active_instance_fails_session(self, runner_factory, seen):
        runner = runner_factory()
        await runner.start_test(_config(concurrent_users=2))
        await _all_active(runner)

        victim = list(runner.sessions.values())[0]
        await runner.pool._recycle_over_limit(victim.instance, "memory", 900.0, 512.0)

        assert victim.status is SessionStatus.FAILED
        assert "memory" in victim.errors[-1].message
        assert list(runner.sessions.values())[1].status is SessionStatus.ACTIVE
        await runner.stop_test()

    async def test_navigation_failure_is_isolated(self, runner_factory, seen):
        runner = runner_factory(launcher=FakeLauncher(goto_error=RuntimeError("net::ERR_NAME_NOT_RESOLVED")))
        await runner.start_test(_config(concurrent_users=2))

        await wait_for(lambda: all(st is SessionStatus.FAILED for st in _statuses(runner)))

        assert runner.is_test_running()
        failed = _of(seen, EventType.SESSION_FAILED)
        assert len(failed) == 2
        assert all("ERR_NAME_NOT_RESOLVED" in e.data["error"] for e in failed)
        assert not _of(seen, EventType.SESSION_STARTED)
        assert len(_of(seen, EventType.ERROR_LOGGED)) == 2

        results = await runner.stop_test()
        assert len([e for e in results.errors if e.message.startswith("Failed to start session")]) == 2


# ── Monitoring / results ──


class TestMonitoring:
    async def test_idle_runner_snapshot(self, runner_factory):
        data = runner_factory().get_monitoring_data()
        assert data.active_sessions == 0
        assert data.total_requests == 0

    async def test_snapshot_aggregates_sessions(self, runner_factory):
        runner = runner_factory()
        await runner.start_test(_config(concurrent_users=2, test_duration=60))
        await _all_active(runner)

        for session in runner.sessions.values():
            session.interceptor._network_metrics.extend([
                NetworkMetric(url="https://cdn.example.com/a.m3u8", method="GET", response_time=100, status_code=200),
                NetworkMetric(url="https://cdn.example.com/b.ts", method="GET", response_time=300, status_code=503),
            ])

        data = runner.get_monitoring_data()
        assert data.active_sessions == 2
        assert data.total_requests == 4
        assert data.successful_requests == 2
        assert data.failed_requests == 2
        assert data.average_response_time == pytest.approx(200)
        assert data.current_rps == pytest.approx(0.4)
        assert 0 < data.remaining_time <= 60
        assert data.resource_utilization.total_instances == 2
        await runner.stop_test()

    async def test_results_with_drm(self, runner_factory):
        runner = runner_factory()
        await runner.start_test(_config(
            concurrent_users=1,
            drm_config=DRMConfiguration(type="widevine", license_url="https://drm.example.com/license"),
        ))
        await _all_active(runner)
        (session,) = runner.sessions.values()
        session.interceptor._network_metrics.extend([
            NetworkMetric(url="https://drm.example.com/license", method="POST", response_time=120, status_code=200,
                          is_streaming_related=True, streaming_type="license"),
            NetworkMetric(url="https://drm.example.com/license", method="POST", response_time=80, status_code=500,
                          is_streaming_related=True, streaming_type="license"),
        ])

        results = await runner.stop_test()

        (drm,) = results.drm_metrics
        assert drm.drm_type == "widevine"
        assert drm.license_request_count == 2
        assert drm.average_license_time == pytest.approx(100)
        assert drm.license_success_rate == pytest.approx(50)
        assert results.streaming_metrics.license_requests == 2
        assert results.summary.peak_concurrent_users == 1
        dumped = results.model_dump(by_alias=True, mode="json")
        assert dumped["summary"]["totalRequests"] == 2

    async def test_monitoring_loop_emits_updates(self, runner_factory, seen):
        runner = runner_factory()
        runner.monitoring_interval = 0.02
        await runner.start_test(_config(concurrent_users=1))

        await wait_for(lambda: _of(seen, EventType.MONITORING_UPDATE))
        assert "activeSessions" in _of(seen, EventType.MONITORING_UPDATE)[0].data
        await runner.stop_test()


# ── Exporters ──


class TestExporters:
    async def test_failing_exporter_does_not_block_stop(self, runner_factory):
        broken = MagicMock()
        broken.export_test_summary.side_effect = RuntimeError("collector down")
        healthy = MagicMock()
        healthy.export_test_summary = AsyncMock()
        healthy.flush = AsyncMock()
        healthy.shutdown = AsyncMock()
        runner = runner_factory(exporters=[broken, healthy])

        await runner.start_test(_config(concurrent_users=1))
        await _all_active(runner)
        results = await runner.stop_test()

        healthy.export_test_summary.assert_awaited_once_with(results.summary, results.test_id)
        healthy.flush.assert_awaited_once()
        healthy.shutdown.assert_awaited_once()
        assert runner.state is RunState.COMPLETED

    async def test_exporters_flushed_then_shut_down(self, runner_factory):
        calls = []

        class RecordingExporter:
            async def flush(self):
                calls.append("flush")

            def shutdown(self):
                calls.append("shutdown")

        runner = runner_factory(exporters=[RecordingExporter()])
        await runner.start_test(_config(concurrent_users=1))
        await _all_active(runner)
        await runner.stop_test()

        assert calls == ["flush", "shutdown"]
