"""
In-process state for browser instances and test sessions.

These never leave the process; anything serialisable lives in ``schema``.
"""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from loadtester.schema import BrowserMetrics, ErrorLog

if TYPE_CHECKING:
    import psutil
    from playwright.async_api import Browser, BrowserContext, Page

    from loadtester.interceptor import NetworkInterceptor


class SessionStatus(str, enum.Enum):
    PENDING = "pending"
    STARTING = "starting"
    ACTIVE = "active"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def finished(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class RunState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class BrowserInstance:
    """One Chromium process owned by the pool, loaned to at most one session."""

    id: str
    lineage: str                      # survives respawns, keys the circuit breaker
    browser: "Browser"
    context: "BrowserContext"
    page: "Page"
    debug_port: int
    browser_version: str = ""
    pid: Optional[int] = None
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)
    active: bool = False
    closing: bool = False             # set before an intentional close
    unhealthy: bool = False
    violations: int = 0               # consecutive over-limit samples
    sample_failures: int = 0          # consecutive failed samples
    metrics: BrowserMetrics = None    # type: ignore[assignment]
    processes: dict[int, "psutil.Process"] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.metrics is None:
            self.metrics = BrowserMetrics(instance_id=self.id)

    def snapshot(self) -> BrowserMetrics:
        return self.metrics.model_copy(update={"uptime": time.time() - self.created_at})


@dataclass
class TestSession:
    __test__ = False

    id: str
    index: int
    status: SessionStatus = SessionStatus.PENDING
    instance: Optional[BrowserInstance] = None
    interceptor: Optional["NetworkInterceptor"] = None
    start_time: Optional[datetime] = None
    target_end_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    errors: list[ErrorLog] = field(default_factory=list)
    task: Any = None                  # asyncio.Task driving the session
    ready: asyncio.Event = field(default_factory=asyncio.Event)    # set once startup settles

    def fail(self, message: str, error: BaseException | None = None, **context: Any) -> None:
        self.status = SessionStatus.FAILED
        self.end_time = datetime.now(tz=timezone.utc)
        self.errors.append(ErrorLog(
            message=message,
            stack=repr(error) if error else None,
            context={"sessionId": self.id, **context},
        ))
