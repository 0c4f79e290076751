"""Tests for the per-lineage circuit breaker."""

from loadtester.error_recovery import CircuitState, ErrorRecoveryManager


class TestErrorRecoveryManager:
    def test_opens_at_threshold(self):
        manager = ErrorRecoveryManager(failure_threshold=3)
        manager.record_failure("slot-1", "disconnected")
        manager.record_failure("slot-1", "memory limit exceeded")
        assert manager.should_respawn("slot-1")

        manager.record_failure("slot-1", "disconnected")
        assert manager.is_retired("slot-1")
        assert manager.get("slot-1").state is CircuitState.OPEN
        assert not manager.should_respawn("slot-1")

    def test_success_resets_consecutive_count(self):
        manager = ErrorRecoveryManager(failure_threshold=2)
        manager.record_failure("slot-1", "disconnected")
        manager.record_success("slot-1")
        manager.record_failure("slot-1", "disconnected")

        health = manager.get("slot-1")
        assert health.failure_count == 2
        assert health.consecutive_failures == 1
        assert not manager.is_retired("slot-1")

    def test_retired_lineage_stays_retired(self):
        manager = ErrorRecoveryManager(failure_threshold=1)
        manager.record_failure("slot-1", "disconnected")
        manager.record_success("slot-1")
        assert manager.is_retired("slot-1")

    def test_lineages_are_independent(self):
        manager = ErrorRecoveryManager(failure_threshold=1)
        manager.record_failure("slot-1", "disconnected")
        assert not manager.is_retired("slot-2")
        assert manager.get("slot-2") is None
        assert manager.should_respawn("slot-2")

    def test_stats(self):
        manager = ErrorRecoveryManager(failure_threshold=2)
        manager.record_failure("a", "x")
        manager.record_failure("a", "y")
        manager.record_failure("b", "z")
        manager.record_restart("b")

        assert manager.stats() == {
            "trackedLineages": 2,
            "failingLineages": 2,
            "retiredLineages": 1,
            "totalFailures": 3,
            "totalRestarts": 1,
        }

    def test_threshold_floor(self):
        assert ErrorRecoveryManager(failure_threshold=0).failure_threshold == 1
