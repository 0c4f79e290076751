"""
TestRunner
==========

* ``start_test()`` sizes a ``BrowserPool`` for the run, then starts one session
  per virtual user, staggered evenly across the ramp-up window.
* A session is: acquire instance → attach interceptor → navigate → hold for
  the test duration → release. Failures stay inside the session.
* Pool events for an instance that is on loan (disconnect, recycle over a
  resource limit) force-fail the owning session only.
* ``stop_test()`` tears everything down best-effort and assembles
  ``TestResults``. With a duration set it runs by itself that long after
  the test started; concurrent callers share one shutdown.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from ulid import ULID

from loadtester import aggregation
from loadtester.browser_manager import BrowserPool
from loadtester.config import get_settings
from loadtester.events import Event, EventBus, EventType
from loadtester.exceptions import InstanceNotFoundError, TestStateError
from loadtester.exporters import ExporterFanout
from loadtester.interceptor import GlobalValues, NetworkInterceptor
from loadtester.models import RunState, SessionStatus, TestSession
from loadtester.randomization import FileDataCache, TemplateEngine
from loadtester.schema import (
    ErrorLog,
    MonitoringData,
    NetworkMetric,
    ResourceUtilization,
    StreamingError,
    TestConfiguration,
    TestResults,
)

logger = logging.getLogger(__name__)

PoolFactory = Callable[[TestConfiguration, str], BrowserPool]


class TestRunner:
    __test__ = False

    def __init__(
        self,
        exporters: Iterable[Any] = (),
        *,
        events: Optional[EventBus] = None,
        engine: Optional[TemplateEngine] = None,
        pool_factory: Optional[PoolFactory] = None,
        monitoring_interval: Optional[float] = None,
        idle_sweep_interval: Optional[float] = None,
        navigation_timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.events = events or EventBus()
        self.engine = engine or TemplateEngine(FileDataCache())
        self.exporters = ExporterFanout(exporters)
        self.monitoring_interval = (
            settings.monitoring_update_interval if monitoring_interval is None else monitoring_interval
        )
        self.idle_sweep_interval = settings.idle_sweep_interval if idle_sweep_interval is None else idle_sweep_interval
        self.navigation_timeout = settings.navigation_timeout if navigation_timeout is None else navigation_timeout
        self._pool_factory = pool_factory or self._default_pool

        self.state = RunState.IDLE
        self.config: Optional[TestConfiguration] = None
        self.pool: Optional[BrowserPool] = None
        self.sessions: dict[str, TestSession] = {}
        self._test_id: Optional[str] = None
        self._results: Optional[TestResults] = None
        self._global_values = GlobalValues()
        self._started_at: float = 0.0
        self._started_wall: Optional[datetime] = None
        self._peak_users = 0
        self._stop_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._ramp_task: Optional[asyncio.Task] = None
        self._background: list[asyncio.Task] = []
        self._teardowns: set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #
    def is_test_running(self) -> bool:
        return self.state is RunState.RUNNING

    def get_test_id(self) -> Optional[str]:
        return self._test_id

    def get_results(self) -> Optional[TestResults]:
        return self._results

    # ------------------------------------------------------------------ #
    # Start
    # ------------------------------------------------------------------ #
    async def start_test(self, config: TestConfiguration) -> str:
        if self.state is RunState.RUNNING:
            raise TestStateError("Test is already running")

        self.state = RunState.RUNNING
        self.config = config
        self._test_id = test_id = f"test-{ULID()}"
        self.sessions = {}
        self._results = None
        self._global_values = GlobalValues()
        self._peak_users = 0
        self._stop_event = asyncio.Event()
        self._started_at = time.monotonic()
        self._started_wall = datetime.now(tz=timezone.utc)

        logger.info(
            "starting test %s: %d users, %.0fs duration, %.0fs ramp-up against %s",
            test_id, config.concurrent_users, config.test_duration, config.ramp_up_time, config.streaming_url,
        )
        self.pool = self._pool_factory(config, test_id)
        self._unsubscribe = self.events.subscribe(self._on_event)
        try:
            await self.pool.initialize()
        except Exception as exc:
            logger.error("test %s failed to start: %s", test_id, exc)
            self.state = RunState.FAILED
            self._unsubscribe()
            self.events.emit(EventType.TEST_FAILED, test_id, error=str(exc))
            with contextlib.suppress(Exception):
                await self.pool.shutdown()
            raise

        self.events.emit(
            EventType.TEST_STARTED, test_id,
            config=config.model_dump(by_alias=True, mode="json"),
        )

        for index in range(config.concurrent_users):
            session = TestSession(id=f"{test_id}-session-{index}", index=index)
            self.sessions[session.id] = session

        self._ramp_task = asyncio.create_task(self._ramp_up())
        self._background = [
            asyncio.create_task(self._monitoring_loop()),
            asyncio.create_task(self._idle_sweeper()),
        ]
        if config.test_duration > 0:
            self._background.append(asyncio.create_task(self._auto_stop()))
        return test_id

    def _default_pool(self, config: TestConfiguration, test_id: str) -> BrowserPool:
        limits = config.resource_limits
        return BrowserPool(
            max_instances=limits.max_concurrent_instances,
            min_instances=min(2, config.concurrent_users),
            resource_limits=limits,
            local_storage=config.local_storage,
            engine=self.engine,
            events=self.events,
            test_id=test_id,
        )

    async def _ramp_up(self) -> None:
        config = self.config
        sessions = list(self.sessions.values())
        interval = config.ramp_up_time / len(sessions) if config.ramp_up_time > 0 else 0.0

        for session in sessions:
            if session.index and interval:
                await asyncio.sleep(interval)
            session.task = asyncio.create_task(self._run_session(session))

        await asyncio.gather(*(s.ready.wait() for s in sessions))
        self.events.emit(
            EventType.RAMP_UP_COMPLETED, self._test_id,
            totalSessions=len(sessions),
            activeSessions=sum(1 for s in sessions if s.status is SessionStatus.ACTIVE),
            failedSessions=sum(1 for s in sessions if s.status is SessionStatus.FAILED),
        )

    # ------------------------------------------------------------------ #
    # Session lifecycle
    # ------------------------------------------------------------------ #
    async def _run_session(self, session: TestSession) -> None:
        try:
            await self._start_session(session)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail_session(session, f"Failed to start session: {exc}", exc)
            return
        finally:
            session.ready.set()

        if session.status is not SessionStatus.ACTIVE:
            return
        if session.target_end_time is not None:
            remaining = (session.target_end_time - datetime.now(tz=timezone.utc)).total_seconds()
            await asyncio.sleep(max(0.0, remaining))
        else:
            await self._stop_event.wait()
        await self._complete_session(session)

    async def _start_session(self, session: TestSession) -> None:
        config = self.config
        session.status = SessionStatus.STARTING
        instance = await self.pool.acquire_instance()
        session.instance = instance
        interceptor = NetworkInterceptor(
            instance.page,
            config.request_parameters,
            {
                **config.variables,
                "sessionId": session.id,
                "sessionIndex": session.index,
                "testId": self._test_id,
                "instanceId": instance.id,
            },
            streaming_only=config.streaming_only,
            allowed_urls=config.allowed_urls,
            blocked_urls=config.blocked_urls,
            engine=self.engine,
            global_values=self._global_values,
            instance_metrics=instance.metrics,
        )
        session.interceptor = interceptor
        await interceptor.start_interception()
        interceptor.start_streaming_monitoring()
        await instance.page.goto(
            config.streaming_url,
            wait_until="domcontentloaded",
            timeout=self.navigation_timeout * 1000,
        )

        if session.status is SessionStatus.FAILED:
            return
        session.status = SessionStatus.ACTIVE
        session.start_time = datetime.now(tz=timezone.utc)
        if config.test_duration > 0:
            # every session ends with the test, however late it started
            session.target_end_time = self._started_wall + timedelta(seconds=config.test_duration)
        active = sum(1 for s in self.sessions.values() if s.status is SessionStatus.ACTIVE)
        self._peak_users = max(self._peak_users, active)
        self.events.emit(
            EventType.SESSION_STARTED, self._test_id,
            sessionId=session.id, index=session.index, instanceId=instance.id,
        )
        logger.debug("session %s active on %s", session.id, instance.id)

    async def _complete_session(self, session: TestSession) -> None:
        session.status = SessionStatus.COMPLETING
        await self._teardown(session)
        session.status = SessionStatus.COMPLETED
        session.end_time = datetime.now(tz=timezone.utc)
        self.events.emit(
            EventType.SESSION_COMPLETED, self._test_id,
            sessionId=session.id,
            requestCount=session.interceptor.get_request_count() if session.interceptor else 0,
        )

    async def _fail_session(self, session: TestSession, message: str, error: BaseException | None = None) -> None:
        if session.status is SessionStatus.FAILED:
            return
        self._mark_failed(session, message, error)
        await self._teardown(session)

    def _mark_failed(self, session: TestSession, message: str, error: BaseException | None = None) -> None:
        logger.warning("session %s failed: %s", session.id, message)
        session.fail(message, error, instanceId=session.instance.id if session.instance else None)
        self.events.emit(EventType.SESSION_FAILED, self._test_id, sessionId=session.id, error=message)
        self.events.emit(
            EventType.ERROR_LOGGED, self._test_id,
            error=session.errors[-1].model_dump(by_alias=True, mode="json"),
        )

    async def _teardown(self, session: TestSession) -> None:
        """Stop the interceptor and hand the instance back; never raises."""
        if session.interceptor is not None:
            try:
                await session.interceptor.stop_interception()
            except Exception:
                logger.warning("stopping interceptor of %s failed", session.id, exc_info=True)

        instance, session.instance = session.instance, None
        if instance is None:
            return
        try:
            await self.pool.release_instance(instance.id)
        except InstanceNotFoundError:
            pass                       # already destroyed by the pool
        except Exception:
            logger.warning("releasing %s for %s failed", instance.id, session.id, exc_info=True)

    # ------------------------------------------------------------------ #
    # Pool events
    # ------------------------------------------------------------------ #
    def _on_event(self, event: Event) -> None:
        if event.test_id != self._test_id:
            return
        if event.type is EventType.INSTANCE_DISCONNECTED:
            message = "Browser instance disconnected"
        elif event.type is EventType.RESOURCE_LIMIT_EXCEEDED and event.data.get("active"):
            message = f"Browser instance exceeded {event.data.get('type')} limit"
        else:
            return

        instance_id = event.data.get("instanceId")
        session = next(
            (s for s in self.sessions.values() if s.instance is not None and s.instance.id == instance_id),
            None,
        )
        if session is None or session.status.finished:
            return

        self._mark_failed(session, message)
        if session.task is not None and session.task is not asyncio.current_task():
            session.task.cancel()
        task = asyncio.ensure_future(self._teardown(session))
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)

    # ------------------------------------------------------------------ #
    # Background loops
    # ------------------------------------------------------------------ #
    async def _monitoring_loop(self) -> None:
        if self.monitoring_interval <= 0:
            return
        while True:
            await asyncio.sleep(self.monitoring_interval)
            try:
                data = self.get_monitoring_data()
                self.events.emit(
                    EventType.MONITORING_UPDATE, self._test_id,
                    **data.model_dump(by_alias=True, mode="json"),
                )
                metrics = self._network_metrics()
                await self.exporters.export_tick(
                    self._test_id,
                    aggregation.summarize(metrics, self._peak_users, self._elapsed()),
                    self.pool.get_metrics(),
                    metrics,
                )
            except Exception:
                # never break the loop
                logger.exception("monitoring update failed")

    async def _idle_sweeper(self) -> None:
        if self.idle_sweep_interval <= 0:
            return
        while True:
            await asyncio.sleep(self.idle_sweep_interval)
            try:
                await self.pool.cleanup_idle_instances()
            except Exception:
                logger.exception("idle sweep failed")

    async def _auto_stop(self) -> None:
        await asyncio.sleep(self.config.test_duration)
        if self.is_test_running() and self._stop_task is None:
            logger.info("test %s reached its duration, stopping", self._test_id)
            await self.stop_test()

    # ------------------------------------------------------------------ #
    # Monitoring
    # ------------------------------------------------------------------ #
    def _elapsed(self) -> float:
        return time.monotonic() - self._started_at if self._started_at else 0.0

    def _network_metrics(self) -> list[NetworkMetric]:
        return [
            m for s in self.sessions.values() if s.interceptor is not None
            for m in s.interceptor.get_network_metrics()
        ]

    def get_monitoring_data(self) -> MonitoringData:
        if self.config is None or self.pool is None:
            return MonitoringData()

        sessions = list(self.sessions.values())
        metrics = self._network_metrics()
        successful = sum(1 for m in metrics if m.succeeded)
        stats = self.pool.get_resource_usage_stats()
        elapsed = self._elapsed()
        duration = self.config.test_duration
        remaining = max(0.0, duration - elapsed) if duration > 0 else 0.0

        return MonitoringData(
            active_sessions=sum(1 for s in sessions if s.status is SessionStatus.ACTIVE),
            completed_sessions=sum(1 for s in sessions if s.status is SessionStatus.COMPLETED),
            failed_sessions=sum(1 for s in sessions if s.status is SessionStatus.FAILED),
            total_requests=len(metrics),
            successful_requests=successful,
            failed_requests=len(metrics) - successful,
            average_response_time=aggregation.average_response_time(metrics),
            current_rps=aggregation.requests_per_second(metrics),
            elapsed_time=elapsed,
            remaining_time=remaining,
            memory_usage=stats["total_memory_usage"],
            cpu_usage=stats["average_cpu_usage"],
            resource_utilization=ResourceUtilization(
                memory_utilization=stats["memory_utilization"],
                cpu_utilization=stats["cpu_utilization"],
                instances_near_memory_limit=stats["instances_near_memory_limit"],
                instances_near_cpu_limit=stats["instances_near_cpu_limit"],
                total_instances=stats["total_instances"],
                active_instances=stats["active_instances"],
                resource_alerts=aggregation.resource_alerts(stats, self.pool.max_instances, metrics),
            ),
        )

    # ------------------------------------------------------------------ #
    # Stop
    # ------------------------------------------------------------------ #
    async def stop_test(self) -> TestResults:
        """Stop the running test. Callers arriving mid-stop get the same results."""
        if self._stop_task is None:
            if self.state is not RunState.RUNNING:
                raise TestStateError("No test is currently running")
            self._stop_task = asyncio.create_task(self._shutdown())
        return await asyncio.shield(self._stop_task)

    async def _shutdown(self) -> TestResults:
        test_id = self._test_id
        logger.info("stopping test %s", test_id)

        try:
            pending = [t for t in (self._ramp_task, *self._background) if t is not None]
            pending += [s.task for s in self.sessions.values() if s.task is not None and not s.task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if self._teardowns:
                await asyncio.gather(*self._teardowns, return_exceptions=True)

            for session in self.sessions.values():
                try:
                    if session.status in (SessionStatus.ACTIVE, SessionStatus.COMPLETING):
                        await self._complete_session(session)
                    elif session.status is SessionStatus.STARTING:
                        await self._fail_session(session, "Test stopped during session startup")
                except Exception:
                    logger.warning("teardown of %s failed", session.id, exc_info=True)

            try:
                await self.pool.shutdown()
            except Exception:
                logger.exception("pool shutdown failed")

            results = self._build_results()
            self._results = results
            self.state = RunState.COMPLETED

            await self.exporters.export_final(
                test_id,
                results.summary,
                results.browser_metrics,
                results.network_metrics,
                results.drm_metrics,
                results.errors,
            )
            await self.exporters.shutdown()
            self.events.emit(
                EventType.TEST_COMPLETED, test_id,
                summary=results.summary.model_dump(by_alias=True, mode="json"),
            )
            logger.info(
                "test %s completed: %d requests, %d failed",
                test_id, results.summary.total_requests, results.summary.failed_requests,
            )
            return results
        finally:
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
            self._stop_event.set()
            self._stop_task = None

    def _build_results(self) -> TestResults:
        metrics: list[NetworkMetric] = []
        errors: list[ErrorLog] = []
        streaming_errors: list[StreamingError] = []
        for session in self.sessions.values():
            errors.extend(session.errors)
            if session.interceptor is not None:
                metrics.extend(session.interceptor.get_network_metrics())
                errors.extend(session.interceptor.get_errors())
                streaming_errors.extend(session.interceptor.get_streaming_errors())

        duration = self._elapsed()
        return TestResults(
            test_id=self._test_id,
            summary=aggregation.summarize(metrics, self._peak_users, duration),
            browser_metrics=self.pool.get_metrics(),
            drm_metrics=aggregation.compute_drm_metrics(self.config.drm_config, metrics, streaming_errors),
            network_metrics=metrics,
            streaming_metrics=aggregation.compute_streaming_metrics(metrics, streaming_errors, duration),
            errors=sorted(errors, key=lambda e: e.timestamp),
        )
