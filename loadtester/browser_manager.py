"""
BrowserPool
===========

* One **Chromium process per instance**, each on its own remote-debugging
  port so the pool can find the OS process tree and sample it with psutil.
* Instances are either *available* (idle in the pool) or *active* (loaned to
  one session), never both. Every change to that bookkeeping happens under
  one asyncio lock; slow work (launch, close, page scrubbing) happens outside.
* A monitor task samples memory / CPU every few seconds. An instance over a
  limit for ``violation_samples`` samples in a row is destroyed and respawned.
* Faults (disconnects, limit violations, failed scrubs, repeated failed
  samples) are counted per lineage by ``ErrorRecoveryManager``; a retired
  lineage is not respawned.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

import aiohttp
from playwright.async_api import async_playwright
from ulid import ULID

from loadtester.config import get_settings
from loadtester.error_recovery import ErrorRecoveryManager
from loadtester.events import EventBus, EventType
from loadtester.exceptions import (
    BrowserLaunchError,
    InstanceNotFoundError,
    PoolCapacityError,
    PoolShutdownError,
)
from loadtester.models import BrowserInstance
from loadtester.randomization import TemplateEngine
from loadtester.resources import find_browser_pid, sample_process_tree
from loadtester.schema import BrowserMetrics, LocalStorageEntry, ResourceLimits

logger = logging.getLogger(__name__)

Launcher = Callable[[str, str], Awaitable[BrowserInstance]]
Sampler = Callable[[BrowserInstance], tuple[float, float]]

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-features=TranslateUI",
    "--disable-ipc-flooding-protection",
    "--disable-extensions",
    "--disable-default-apps",
    "--disable-sync",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-gpu",
    "--disable-background-networking",
    "--disable-client-side-phishing-detection",
    "--disable-hang-monitor",
    "--disable-popup-blocking",
    "--metrics-recording-only",
    "--password-store=basic",
    "--use-mock-keychain",
]

# sample arrays available to localStorage templates
LOCAL_STORAGE_ARRAYS: dict[str, list[str]] = {
    "userIds": ["user_001", "user_002", "user_003", "user_004", "user_005"],
    "deviceTypes": ["desktop", "mobile", "tablet"],
    "themes": ["light", "dark", "auto"],
    "languages": ["en", "es", "fr", "de", "ja"],
    "currencies": ["USD", "EUR", "GBP", "JPY", "CAD"],
    "videoQualities": ["480p", "720p", "1080p", "4K"],
    "subscriptionTiers": ["free", "basic", "premium", "enterprise"],
    "booleans": ["true", "false"],
    "playbackSpeeds": ["0.5", "0.75", "1.0", "1.25", "1.5", "2.0"],
}


def _pick_free_port() -> int:
    """Ask the OS for an unused TCP port and immediately release it."""
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


async def _fetch_browser_version(port: int) -> str:
    """Browser version string from the DevTools ``/json/version`` endpoint."""
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5)) as http:
            async with http.get(f"http://127.0.0.1:{port}/json/version") as resp:
                info = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        logger.debug("no /json/version on port %s: %s", port, exc)
        return ""
    return info.get("Browser", "")


def _default_sampler(instance: BrowserInstance) -> tuple[float, float]:
    if instance.pid is None:
        instance.pid = find_browser_pid(instance.debug_port)
    if instance.pid is None:
        raise LookupError(f"browser process for {instance.id} not found")
    return sample_process_tree(instance.pid, instance.processes)


class BrowserPool:
    def __init__(
        self,
        max_instances: int,
        min_instances: int,
        resource_limits: ResourceLimits,
        *,
        headless: Optional[bool] = None,
        browser_args: Iterable[str] = (),
        local_storage: Iterable[LocalStorageEntry] = (),
        engine: Optional[TemplateEngine] = None,
        events: Optional[EventBus] = None,
        test_id: Optional[str] = None,
        monitor_interval: Optional[float] = None,
        acquire_timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
        violation_samples: Optional[int] = None,
        sample_failures: Optional[int] = None,
        failure_threshold: Optional[int] = None,
        launcher: Optional[Launcher] = None,
        sampler: Optional[Sampler] = None,
    ) -> None:
        settings = get_settings()
        self.max_instances = max_instances
        self.min_instances = min(min_instances, max_instances)
        self.resource_limits = resource_limits
        self.headless = settings.headless if headless is None else headless
        self.browser_args = [*CHROMIUM_ARGS, *settings.browser_args, *browser_args]
        self.local_storage = list(local_storage)
        self.engine = engine or TemplateEngine()
        self.events = events or EventBus()
        self.test_id = test_id
        self.monitor_interval = monitor_interval if monitor_interval is not None else settings.monitor_interval
        self.acquire_timeout = acquire_timeout if acquire_timeout is not None else settings.acquire_timeout
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.idle_timeout
        self.violation_samples = max(1, violation_samples or settings.violation_samples)
        self.sample_failures = max(1, sample_failures or settings.sample_failures)
        self.recovery = ErrorRecoveryManager(failure_threshold or settings.failure_threshold)

        self._launcher: Launcher = launcher or self._launch_instance
        self._sampler: Sampler = sampler or _default_sampler
        self._pw = None

        self._instances: dict[str, BrowserInstance] = {}
        self._available: dict[str, None] = {}       # ordered set, oldest first
        self._pending = 0                           # launches in flight
        self._history: list[BrowserMetrics] = []    # destroyed instances
        self._lock = asyncio.Lock()
        self._cond = asyncio.Condition(self._lock)
        self._monitor_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._shutting_down = False
        self._closed = False

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    async def initialize(self) -> None:
        """Start the engine and pre-warm ``min_instances`` browsers."""
        if self._launcher == self._launch_instance and self._pw is None:
            try:
                self._pw = await async_playwright().start()
            except Exception as exc:
                raise BrowserLaunchError(f"cannot start browser engine: {exc}") from exc

        async with self._lock:
            wanted = max(0, self.min_instances - len(self._instances) - self._pending)
            self._pending += wanted

        results = await asyncio.gather(
            *(self._spawn(lineage=None) for _ in range(wanted)),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            raise BrowserLaunchError(f"failed to launch browser: {failures[0]}") from failures[0]

        if self._monitor_task is None and self.monitor_interval > 0:
            self._monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info("browser pool ready with %d instance(s)", len(self._instances))

    async def shutdown(self) -> None:
        """Destroy every instance. Safe to call more than once."""
        if self._closed:
            return
        self._shutting_down = True

        if self._monitor_task is not None:
            self._monitor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._monitor_task
            self._monitor_task = None

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        async with self._cond:
            self._cond.notify_all()       # wake waiting acquirers so they fail fast

        await asyncio.gather(
            *(self._destroy(iid, reason="shutdown") for iid in list(self._instances)),
            return_exceptions=True,
        )

        if self._pw is not None:
            try:
                await self._pw.stop()
            except Exception:
                logger.debug("playwright stop failed", exc_info=True)
            self._pw = None
        self._closed = True
        logger.info("browser pool shut down")

    # ------------------------------------------------------------------ #
    # Public API – acquire / release
    # ------------------------------------------------------------------ #
    async def acquire_instance(self) -> BrowserInstance:
        """Loan an instance; waits up to ``acquire_timeout`` when at capacity."""
        if self._shutting_down:
            raise PoolShutdownError("Browser pool is shutting down")

        deadline = time.monotonic() + self.acquire_timeout
        async with self._cond:
            while True:
                instance = self._take_available()
                if instance is not None:
                    return instance
                if len(self._instances) + self._pending < self.max_instances:
                    self._pending += 1
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PoolCapacityError("Timeout waiting for available browser instance")
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    raise PoolCapacityError("Timeout waiting for available browser instance") from None
                if self._shutting_down:
                    raise PoolShutdownError("Browser pool is shutting down")

        return await self._spawn(lineage=None, claim=True)

    async def release_instance(self, instance_id: str) -> None:
        async with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                raise InstanceNotFoundError(f"Browser instance {instance_id} not found")
            instance.active = False
            instance.last_used = time.time()
            unhealthy = instance.unhealthy or self.recovery.is_retired(instance.lineage)

        if not unhealthy and not self._shutting_down:
            try:
                await self._scrub(instance)
            except Exception as exc:
                logger.warning("cleanup of %s failed, destroying: %s", instance_id, exc)
                self.recovery.record_failure(instance.lineage, f"cleanup failed: {exc}")
                unhealthy = True

        if unhealthy or self._shutting_down:
            await self._destroy(instance_id, reason="unhealthy")
            await self._replace(instance.lineage, only_below_min=True)
            return

        async with self._cond:
            if instance_id not in self._instances:      # destroyed meanwhile
                return
            self.recovery.record_success(instance.lineage)
            self._available[instance_id] = None
            self._cond.notify()
        logger.debug("released %s", instance_id)

    # ------------------------------------------------------------------ #
    # Snapshots (never block)
    # ------------------------------------------------------------------ #
    def get_instance(self, instance_id: str) -> Optional[BrowserInstance]:
        return self._instances.get(instance_id)

    def get_metrics(self) -> list[BrowserMetrics]:
        """Live instances plus every instance destroyed so far."""
        return [i.snapshot() for i in self._instances.values()] + list(self._history)

    def get_pool_status(self) -> dict[str, Any]:
        total = len(self._instances)
        return {
            "total_instances": total,
            "available_instances": len(self._available),
            "active_instances": sum(1 for i in self._instances.values() if i.active),
            "pending_instances": self._pending,
            "max_instances": self.max_instances,
            "min_instances": self.min_instances,
            "resource_limits": self.resource_limits.model_dump(),
        }

    def get_resource_usage_stats(self) -> dict[str, Any]:
        instances = list(self._instances.values())
        count = len(instances)
        mem_limit = self.resource_limits.max_memory_per_instance
        cpu_limit = self.resource_limits.max_cpu_percentage
        total_mem = sum(i.metrics.memory_usage for i in instances)
        total_cpu = sum(i.metrics.cpu_usage for i in instances)
        avg_cpu = total_cpu / count if count else 0.0
        return {
            "total_instances": count,
            "active_instances": sum(1 for i in instances if i.active),
            "total_memory_usage": total_mem,
            "average_memory_usage": total_mem / count if count else 0.0,
            "total_cpu_usage": total_cpu,
            "average_cpu_usage": avg_cpu,
            "memory_utilization": total_mem / (count * mem_limit) * 100 if count else 0.0,
            "cpu_utilization": avg_cpu / cpu_limit * 100,
            "instances_near_memory_limit": sum(1 for i in instances if i.metrics.memory_usage > mem_limit * 0.8),
            "instances_near_cpu_limit": sum(1 for i in instances if i.metrics.cpu_usage > cpu_limit * 0.8),
        }

    def get_error_recovery_stats(self) -> dict[str, int]:
        return self.recovery.stats()

    # ------------------------------------------------------------------ #
    # Idle eviction
    # ------------------------------------------------------------------ #
    async def cleanup_idle_instances(self, max_idle: Optional[float] = None) -> int:
        """Destroy instances idle longer than *max_idle* seconds, down to ``min_instances``."""
        max_idle = self.idle_timeout if max_idle is None else max_idle
        now = time.time()
        async with self._lock:
            budget = max(0, len(self._instances) - self.min_instances)
            idle = [
                iid for iid in self._available
                if now - self._instances[iid].last_used > max_idle
            ][:budget]
            for iid in idle:
                self._available.pop(iid, None)

        for iid in idle:
            await self._destroy(iid, reason="idle")
            self.events.emit(EventType.INSTANCE_CLEANED_IDLE, self.test_id, instanceId=iid)
        if idle:
            logger.info("evicted %d idle instance(s)", len(idle))
        return len(idle)

    # ------------------------------------------------------------------ #
    # Resource monitoring
    # ------------------------------------------------------------------ #
    async def _monitor_loop(self) -> None:
        while not self._shutting_down:
            await asyncio.sleep(self.monitor_interval)
            try:
                await self.sample_resources()
            except Exception:
                # never break the loop
                logger.exception("resource sampling pass failed")

    async def sample_resources(self) -> None:
        """One sampling pass over every live instance, enforcing limits."""
        limits = self.resource_limits
        for instance in list(self._instances.values()):
            if instance.closing:
                continue
            try:
                memory, cpu = await asyncio.to_thread(self._sampler, instance)
            except Exception as exc:
                instance.metrics.error_count += 1
                instance.sample_failures += 1
                logger.debug("sampling %s failed: %s", instance.id, exc)
                if instance.sample_failures >= self.sample_failures:
                    await self._mark_unhealthy(instance, f"resource sampling failed: {exc}")
                continue

            instance.sample_failures = 0
            instance.metrics.memory_usage = memory
            instance.metrics.cpu_usage = cpu

            if memory > limits.max_memory_per_instance:
                kind, usage, limit = "memory", memory, limits.max_memory_per_instance
            elif cpu > limits.max_cpu_percentage:
                kind, usage, limit = "cpu", cpu, limits.max_cpu_percentage
            else:
                instance.violations = 0
                continue

            instance.violations += 1
            if instance.violations >= self.violation_samples:
                await self._recycle_over_limit(instance, kind, usage, limit)

    async def _recycle_over_limit(self, instance: BrowserInstance, kind: str, usage: float, limit: float) -> None:
        logger.warning(
            "%s over %s limit (%.1f > %.1f) for %d samples, recycling",
            instance.id, kind, usage, limit, instance.violations,
        )
        self.events.emit(
            EventType.RESOURCE_LIMIT_EXCEEDED, self.test_id,
            instanceId=instance.id, lineage=instance.lineage, type=kind,
            usage=usage, limit=limit, active=instance.active,
        )
        self.recovery.record_failure(instance.lineage, f"{kind} limit exceeded")
        await self._destroy(instance.id, reason=f"{kind} limit")
        await self._replace(instance.lineage, only_below_min=False)

    async def _mark_unhealthy(self, instance: BrowserInstance, reason: str) -> None:
        """Flag an instance that stopped answering; idle ones are recycled now, loaned ones on release."""
        if instance.unhealthy:
            return
        instance.unhealthy = True
        logger.warning("%s marked unhealthy: %s", instance.id, reason)
        self.events.emit(
            EventType.INSTANCE_UNHEALTHY, self.test_id,
            instanceId=instance.id, lineage=instance.lineage, reason=reason, active=instance.active,
        )
        self.recovery.record_failure(instance.lineage, reason)
        if instance.active:
            return
        await self._destroy(instance.id, reason="unhealthy")
        await self._replace(instance.lineage, only_below_min=False)

    # ------------------------------------------------------------------ #
    # Disconnects
    # ------------------------------------------------------------------ #
    def _on_browser_disconnected(self, instance_id: str) -> None:
        instance = self._instances.get(instance_id)
        if instance is None or instance.closing or self._shutting_down:
            return
        task = asyncio.ensure_future(self._handle_disconnect(instance_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_disconnect(self, instance_id: str) -> None:
        async with self._cond:
            instance = self._instances.pop(instance_id, None)
            if instance is None:
                return
            self._available.pop(instance_id, None)
            self._history.append(instance.snapshot())
            self._cond.notify_all()

        instance.closing = True
        logger.error("browser instance %s disconnected unexpectedly", instance_id)
        self.events.emit(
            EventType.INSTANCE_DISCONNECTED, self.test_id,
            instanceId=instance_id, lineage=instance.lineage, active=instance.active,
        )
        self.recovery.record_failure(instance.lineage, "disconnected")
        await self._replace(instance.lineage, only_below_min=False)

    # ------------------------------------------------------------------ #
    # Creation / destruction
    # ------------------------------------------------------------------ #
    def _take_available(self) -> Optional[BrowserInstance]:
        iid = next(iter(self._available), None)
        if iid is None:
            return None
        del self._available[iid]
        instance = self._instances[iid]
        instance.active = True
        instance.last_used = time.time()
        return instance

    async def _spawn(self, lineage: Optional[str], claim: bool = False) -> BrowserInstance:
        """Launch and register one instance. Caller has already bumped ``_pending``."""
        instance_id = f"browser-{ULID()}"
        lineage = lineage or instance_id
        try:
            instance = await self._launcher(instance_id, lineage)
        except asyncio.CancelledError:
            self._pending -= 1
            raise
        except Exception as exc:
            async with self._cond:
                self._pending -= 1
                self._cond.notify_all()
            logger.error("failed to launch %s: %s", instance_id, exc)
            self.events.emit(
                EventType.INSTANCE_CREATION_FAILED, self.test_id,
                instanceId=instance_id, error=str(exc),
            )
            raise

        instance.browser.on("disconnected", lambda _browser: self._on_browser_disconnected(instance.id))

        async with self._cond:
            self._pending -= 1
            if self._shutting_down:
                instance.closing = True
                self._cond.notify_all()
            else:
                self._instances[instance.id] = instance
                if claim:
                    instance.active = True
                    instance.last_used = time.time()
                else:
                    self._available[instance.id] = None
                    self._cond.notify()

        if instance.closing:
            with contextlib.suppress(Exception):
                await instance.browser.close()
            raise PoolShutdownError("Browser pool is shutting down")

        self.events.emit(EventType.INSTANCE_CREATED, self.test_id, instanceId=instance.id, lineage=lineage)
        logger.debug("created %s (lineage %s)", instance.id, lineage)
        return instance

    async def _replace(self, lineage: str, only_below_min: bool) -> None:
        if self._shutting_down:
            return
        if not self.recovery.should_respawn(lineage):
            self.events.emit(EventType.INSTANCE_RETIRED, self.test_id, lineage=lineage)
            logger.warning("lineage %s retired, not respawning", lineage)
            return

        async with self._lock:
            count = len(self._instances) + self._pending
            if count >= self.max_instances or (only_below_min and count >= self.min_instances):
                return
            self._pending += 1

        self.recovery.record_restart(lineage)
        try:
            await self._spawn(lineage=lineage)
        except Exception as exc:
            self.recovery.record_failure(lineage, f"respawn failed: {exc}")

    async def _destroy(self, instance_id: str, reason: str) -> None:
        async with self._cond:
            instance = self._instances.pop(instance_id, None)
            if instance is None:
                return
            self._available.pop(instance_id, None)
            self._history.append(instance.snapshot())
            self._cond.notify_all()

        instance.closing = True
        try:
            await instance.context.close()
            await instance.browser.close()
        except Exception:
            # browser may already be gone
            logger.debug("close of %s failed", instance_id, exc_info=True)

        self.events.emit(EventType.INSTANCE_DESTROYED, self.test_id, instanceId=instance_id, reason=reason)
        logger.debug("destroyed %s (%s)", instance_id, reason)

    async def _launch_instance(self, instance_id: str, lineage: str) -> BrowserInstance:
        """Launch a standalone Chromium and open its single page."""
        if self._pw is None:
            raise BrowserLaunchError("browser engine not started")
        port = _pick_free_port()

        browser = await self._pw.chromium.launch(
            headless=self.headless,
            args=[f"--remote-debugging-port={port}", *self.browser_args],
        )
        try:
            version = await _fetch_browser_version(port)
            context = await browser.new_context(
                viewport={"width": 1280, "height": 720},
                ignore_https_errors=True,
            )
            page = await context.new_page()
        except Exception:
            await browser.close()
            raise

        instance = BrowserInstance(
            id=instance_id,
            lineage=lineage,
            browser=browser,
            context=context,
            page=page,
            debug_port=port,
            browser_version=version,
        )
        instance.pid = await asyncio.to_thread(find_browser_pid, port)

        if self.local_storage:
            await self._initialize_local_storage(instance)
        return instance

    # ------------------------------------------------------------------ #
    # Page hygiene
    # ------------------------------------------------------------------ #
    async def _scrub(self, instance: BrowserInstance) -> None:
        await instance.page.goto("about:blank")
        await instance.context.clear_cookies()
        await instance.context.clear_permissions()
        try:
            await instance.page.evaluate(
                "() => { try { localStorage.clear(); sessionStorage.clear(); } catch (e) {} }"
            )
        except Exception:
            logger.debug("storage clear failed on %s", instance.id, exc_info=True)

    async def _initialize_local_storage(self, instance: BrowserInstance) -> None:
        context = {
            "instanceId": instance.id,
            "sessionId": f"sess-{ULID()}",
            "timestamp": str(int(time.time() * 1000)),
            **LOCAL_STORAGE_ARRAYS,
        }
        page = instance.page
        for entry in self.local_storage:
            url = entry.domain if entry.domain.startswith("http") else f"https://{entry.domain}"
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=10_000)
                data = self.engine.process_mapping(entry.data, context)
                await page.evaluate(
                    "data => { for (const [k, v] of Object.entries(data)) localStorage.setItem(k, v); }",
                    data,
                )
            except Exception as exc:
                # keep going with the other domains
                logger.warning("localStorage init for %s failed: %s", entry.domain, exc)
                continue
            self.events.emit(
                EventType.LOCAL_STORAGE_INITIALIZED, self.test_id,
                instanceId=instance.id, domain=entry.domain, itemCount=len(data),
            )
        await page.goto("about:blank")
