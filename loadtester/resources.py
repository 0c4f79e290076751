"""
Process-level resource sampling for pooled browsers.

Chromium is a tree of processes (browser, renderers, GPU, utility); an
instance's footprint is the sum over the whole tree. These calls block, so
the pool runs them through ``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


def find_browser_pid(debug_port: int) -> Optional[int]:
    """PID of the browser process launched with ``--remote-debugging-port=<port>``."""
    flag = f"--remote-debugging-port={debug_port}"
    candidates: list[psutil.Process] = []
    for proc in psutil.process_iter(["pid", "ppid", "cmdline"]):
        cmdline = proc.info.get("cmdline") or []
        if flag in cmdline:
            candidates.append(proc)
    if not candidates:
        return None
    pids = {p.info["pid"] for p in candidates}
    # the root is the one whose parent is not itself a match
    for proc in candidates:
        if proc.info.get("ppid") not in pids:
            return proc.info["pid"]
    return candidates[0].info["pid"]


def sample_process_tree(pid: int, cache: dict[int, psutil.Process]) -> tuple[float, float]:
    """Return ``(memory_mb, cpu_percent)`` for *pid* and all its descendants.

    *cache* keeps ``psutil.Process`` objects between calls so ``cpu_percent``
    measures the interval since the previous sample; the first sample of a
    process reports 0.0 CPU.
    """
    root = cache.get(pid) or psutil.Process(pid)
    cache[pid] = root
    tree = [root] + root.children(recursive=True)

    memory = 0.0
    cpu = 0.0
    alive: set[int] = set()
    for proc in tree:
        tracked = cache.setdefault(proc.pid, proc)
        try:
            with tracked.oneshot():
                memory += tracked.memory_info().rss / _MB
                cpu += tracked.cpu_percent(interval=None)
            alive.add(tracked.pid)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            if tracked.pid == pid:
                raise
        except psutil.AccessDenied:
            logger.debug("access denied sampling pid %s", tracked.pid)
            alive.add(tracked.pid)

    for stale in set(cache) - alive:
        del cache[stale]
    return memory, cpu
