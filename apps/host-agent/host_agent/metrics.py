"""
Host Metrics
============

Collects host-level signals for the heartbeat via psutil. Every collector
degrades to a neutral value instead of raising — a metrics hiccup must never
cost us a heartbeat.
"""

from __future__ import annotations
import logging
import os
import platform
import time
from dataclasses import dataclass, field

import psutil  # type: ignore

log = logging.getLogger(__name__)

CPU_SAMPLE_SECONDS = 1.0


def cpu_usage(interval: float = CPU_SAMPLE_SECONDS) -> int:
    """CPU usage 0–100, sampled over ``interval`` seconds."""
    try:
        return round(max(0.0, min(100.0, psutil.cpu_percent(interval=interval))))
    except Exception as e:
        log.debug(f"CPU usage unavailable: {e}")
        return 0


def ram_usage() -> int:
    try:
        return round(psutil.virtual_memory().percent)
    except Exception as e:
        log.debug(f"RAM usage unavailable: {e}")
        return 0


def disk_usage(path: str = "") -> int:
    """Usage of the root partition 0–100, or -1 if it can't be determined."""
    path = path or os.path.abspath(os.sep)
    try:
        return round(psutil.disk_usage(path).percent)
    except Exception as e:
        log.debug(f"Disk usage unavailable for {path}: {e}")
        return -1


def total_ram_gb() -> float:
    try:
        return round(psutil.virtual_memory().total / (1024 ** 3), 1)
    except Exception:
        return 0.0


def cpu_cores() -> int:
    return psutil.cpu_count(logical=True) or 0


def cpu_model() -> str:
    model = platform.processor()
    if not model and os.path.exists("/proc/cpuinfo"):
        try:
            with open("/proc/cpuinfo", encoding="utf-8") as f:
                for line in f:
                    if line.lower().startswith("model name"):
                        model = line.split(":", 1)[1].strip()
                        break
        except OSError:
            pass
    return model or "unknown"


def os_info() -> str:
    """e.g. "Linux 6.6.87", "Darwin 23.2.0", "Windows 10"."""
    return f"{platform.system()} {platform.release()}"


@dataclass
class HostMetrics:
    """Host metadata that doesn't change, plus sampled usage figures."""
    cpu_sample_seconds: float = CPU_SAMPLE_SECONDS
    _start_time: float = field(default_factory=time.time, init=False, repr=False)

    def uptime(self) -> int:
        return round(time.time() - self._start_time)

    def collect(self) -> dict:
        return {
            "cpuUsage":      cpu_usage(self.cpu_sample_seconds),
            "ramUsage":      ram_usage(),
            "diskUsage":     disk_usage(),
            "osInfo":        os_info(),
            "pythonVersion": platform.python_version(),
            "uptime":        self.uptime(),
            "totalRamGb":    total_ram_gb(),
            "cpuCores":      cpu_cores(),
            "cpuModel":      cpu_model(),
        }
