"""
Per-lineage circuit breaker.

A lineage is the chain of instances created to fill one pool slot: when an
instance is destroyed for a fault its replacement inherits the lineage, so
consecutive failures accumulate across respawns. Once a lineage reaches the
failure threshold it is retired for good and no replacement is spawned.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"           # retired, never respawned


@dataclass
class LineageHealth:
    lineage: str
    failure_count: int = 0
    consecutive_failures: int = 0
    total_restarts: int = 0
    last_failure_at: float | None = None
    last_reason: str | None = None
    state: CircuitState = CircuitState.CLOSED
    reasons: list[str] = field(default_factory=list)


class ErrorRecoveryManager:
    def __init__(self, failure_threshold: int = 3) -> None:
        self.failure_threshold = max(1, failure_threshold)
        self._lineages: dict[str, LineageHealth] = {}

    def _health(self, lineage: str) -> LineageHealth:
        if lineage not in self._lineages:
            self._lineages[lineage] = LineageHealth(lineage=lineage)
        return self._lineages[lineage]

    def record_failure(self, lineage: str, reason: str) -> LineageHealth:
        """Count a fault; opens the breaker once the threshold is reached."""
        health = self._health(lineage)
        health.failure_count += 1
        health.consecutive_failures += 1
        health.last_failure_at = time.time()
        health.last_reason = reason
        health.reasons.append(reason)

        if health.state is CircuitState.CLOSED and health.consecutive_failures >= self.failure_threshold:
            health.state = CircuitState.OPEN
            logger.warning(
                "circuit breaker opened for %s after %d consecutive failures (last: %s)",
                lineage, health.consecutive_failures, reason,
            )
        return health

    def record_success(self, lineage: str) -> None:
        health = self._lineages.get(lineage)
        if health is not None and health.state is CircuitState.CLOSED:
            health.consecutive_failures = 0

    def record_restart(self, lineage: str) -> None:
        self._health(lineage).total_restarts += 1

    def is_retired(self, lineage: str) -> bool:
        health = self._lineages.get(lineage)
        return health is not None and health.state is CircuitState.OPEN

    def should_respawn(self, lineage: str) -> bool:
        return not self.is_retired(lineage)

    def get(self, lineage: str) -> LineageHealth | None:
        return self._lineages.get(lineage)

    def stats(self) -> dict[str, int]:
        lineages = list(self._lineages.values())
        return {
            "trackedLineages": len(lineages),
            "failingLineages": sum(1 for h in lineages if h.consecutive_failures > 0),
            "retiredLineages": sum(1 for h in lineages if h.state is CircuitState.OPEN),
            "totalFailures": sum(h.failure_count for h in lineages),
            "totalRestarts": sum(h.total_restarts for h in lineages),
        }
