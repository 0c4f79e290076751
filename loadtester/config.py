import logging
import os
from functools import lru_cache


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    headless: bool = _env_bool("LOADTEST_HEADLESS", "true")
    # extra chromium flags, space separated
    browser_args: list[str] = os.getenv("LOADTEST_BROWSER_ARGS", "").split()

    monitor_interval: float = float(os.getenv("LOADTEST_MONITOR_INTERVAL", "5"))
    monitoring_update_interval: float = float(os.getenv("LOADTEST_MONITORING_UPDATE_INTERVAL", "2"))
    acquire_timeout: float = float(os.getenv("LOADTEST_ACQUIRE_TIMEOUT", "30"))
    navigation_timeout: float = float(os.getenv("LOADTEST_NAVIGATION_TIMEOUT", "30"))
    idle_timeout: float = float(os.getenv("LOADTEST_IDLE_TIMEOUT", "300"))
    idle_sweep_interval: float = float(os.getenv("LOADTEST_IDLE_SWEEP_INTERVAL", "30"))

    # consecutive over-limit samples before an instance is recycled
    violation_samples: int = int(os.getenv("LOADTEST_VIOLATION_SAMPLES", "2"))
    # consecutive failed samples before an instance is marked unhealthy
    sample_failures: int = int(os.getenv("LOADTEST_SAMPLE_FAILURES", "3"))
    failure_threshold: int = int(os.getenv("LOADTEST_FAILURE_THRESHOLD", "3"))

    control_token: str | None = os.getenv("LOADTEST_CONTROL_TOKEN") or None
    log_level: str = os.getenv("LOADTEST_LOG_LEVEL", "INFO").upper()


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=level or get_settings().log_level,
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
    )
