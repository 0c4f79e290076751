"""Errors raised out of the pool and the runner."""


class LoadTestError(Exception):
    pass


# ───────────────────────────── Pool ───────────────────────────── #

class PoolError(LoadTestError):
    pass


class PoolShutdownError(PoolError):
    pass


class PoolCapacityError(PoolError):
    """No instance became available within the acquire timeout."""


class InstanceNotFoundError(PoolError):
    pass


class BrowserLaunchError(LoadTestError):
    pass


# ──────────────────────────── Runner ──────────────────────────── #

class TestStateError(LoadTestError):
    """Start while running, or stop while idle."""

    __test__ = False


class InterceptorError(LoadTestError):
    pass
