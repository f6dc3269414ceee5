"""
Resource snapshots for managed processes.

Collects CPU and memory usage of a process and its children with psutil,
for status responses.
"""

import logging
from datetime import datetime
from typing import Optional

import psutil

logger = logging.getLogger(__name__)


def get_process_metrics(pid: Optional[int], started_at: Optional[datetime] = None) -> dict:
    """Get current resource usage for a process tree."""
    result = {
        "pid": pid,
        "cpu_percent": 0.0,
        "memory_mb": 0.0,
        "child_processes": 0,
        "uptime_seconds": 0,
    }
    if not pid:
        return result

    try:
        proc = psutil.Process(pid)
        cpu_percent = proc.cpu_percent(interval=0.1)
        memory_mb = proc.memory_info().rss / 1024 / 1024

        # Include children
        child_count = 0
        try:
            children = proc.children(recursive=True)
            child_count = len(children)
            for child in children:
                cpu_percent += child.cpu_percent(interval=0.1)
                memory_mb += child.memory_info().rss / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

        result.update({
            "cpu_percent": round(cpu_percent, 1),
            "memory_mb": round(memory_mb, 1),
            "child_processes": child_count,
            "uptime_seconds": (datetime.now() - started_at).total_seconds() if started_at else 0,
        })

    except psutil.NoSuchProcess:
        logger.debug(f"Process {pid} no longer exists")
    except psutil.AccessDenied:
        logger.warning(f"Access denied reading metrics for pid {pid}")

    return result
