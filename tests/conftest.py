"""Shared fakes: Playwright objects are MagicMock/AsyncMock, no real browser."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from loadtester.browser_manager import BrowserPool
from loadtester.events import EventBus
from loadtester.models import BrowserInstance
from loadtester.schema import ResourceLimits


def make_page():
    page = MagicMock()
    page.route = AsyncMock()
    page.unroute = AsyncMock()
    page.goto = AsyncMock()
    page.evaluate = AsyncMock()
    return page


def make_instance(instance_id, lineage=None):
    browser = MagicMock()
    browser.close = AsyncMock()
    context = MagicMock()
    context.close = AsyncMock()
    context.clear_cookies = AsyncMock()
    context.clear_permissions = AsyncMock()
    return BrowserInstance(
        id=instance_id,
        lineage=lineage or instance_id,
        browser=browser,
        context=context,
        page=make_page(),
        debug_port=9222,
        browser_version="Chrome/120.0",
    )


class FakeLauncher:
    """Stands in for ``BrowserPool._launch_instance``."""

    def __init__(self, error=None, goto_error=None):
        self.error = error
        self.goto_error = goto_error
        self.launched = []

    async def __call__(self, instance_id, lineage):
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        instance = make_instance(instance_id, lineage)
        if self.goto_error is not None:
            instance.page.goto.side_effect = self.goto_error
        self.launched.append(instance)
        return instance


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def seen(events):
    received = []
    events.subscribe(received.append)
    return received


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def make_pool(events, launcher):
    def _make(max_instances=3, min_instances=1, **kwargs):
        kwargs.setdefault("resource_limits", ResourceLimits(max_memory_per_instance=512, max_cpu_percentage=80))
        kwargs.setdefault("monitor_interval", 0)
        kwargs.setdefault("acquire_timeout", 0.2)
        kwargs.setdefault("violation_samples", 2)
        kwargs.setdefault("sample_failures", 3)
        kwargs.setdefault("failure_threshold", 3)
        kwargs.setdefault("launcher", launcher)
        kwargs.setdefault("events", events)
        pool = BrowserPool(max_instances, min_instances, **kwargs)
        return pool

    return _make
