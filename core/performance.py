"""
Performance monitoring for Camera Dashboard.

Handles CPU load and temperature monitoring.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Optional

DEFAULT_CPU_LOAD_THRESHOLD = 0.75
DEFAULT_CPU_TEMP_THRESHOLD_C = 75.0

THERMAL_PATHS = (
    "/sys/class/thermal/thermal_zone0/temp",
    "/sys/class/hwmon/hwmon0/temp1_input",
)


def normalize_load_average(load1: float, cpu_count: int) -> float:
    """Load average per core, clamped to [0, 1]. No cores counts as one."""
    cores = max(int(cpu_count or 0), 1)
    ratio = load1 / cores
    return max(0.0, min(1.0, ratio))


def read_cpu_load_ratio() -> Optional[float]:
    """Read 1-minute load average normalized to CPU count."""
    try:
        load1, _, _ = os.getloadavg()
    except OSError:
        return None
    return normalize_load_average(load1, os.cpu_count() or 1)


def read_cpu_temp_c(paths=THERMAL_PATHS) -> Optional[float]:
    """Read CPU temperature in Celsius if the system exposes it."""
    for p in paths:
        try:
            if os.path.exists(p):
                with open(p, "r") as f:
                    raw = f.read().strip()
                if raw:
                    val = float(raw)
                    if val > 1000:
                        val = val / 1000.0
                    return val
        except (OSError, ValueError):
            continue
    return None


class PerformanceMonitor:
    """Holds the latest load/temperature sample and judges stress."""

    def __init__(
        self,
        cpu_load_threshold: float = DEFAULT_CPU_LOAD_THRESHOLD,
        cpu_temp_threshold_c: float = DEFAULT_CPU_TEMP_THRESHOLD_C,
        load_reader: Callable[[], Optional[float]] = read_cpu_load_ratio,
        temp_reader: Callable[[], Optional[float]] = read_cpu_temp_c,
        logger: Optional[logging.Logger] = None,
    ):
        self.cpu_load_threshold = cpu_load_threshold
        self.cpu_temp_threshold_c = cpu_temp_threshold_c
        self._load_reader = load_reader
        self._temp_reader = temp_reader
        self._log = logger or logging.getLogger("camera_dashboard.perf")
        self.load_avg: Optional[float] = None
        self.temperature: Optional[float] = None

    def sample(self) -> tuple[Optional[float], Optional[float]]:
        """Refresh readings. Returns (load_ratio, temp_c); None when unavailable."""
        self.load_avg = self._load_reader()
        self.temperature = self._temp_reader()
        self._log.debug("Telemetry load=%s temp=%s", self.load_avg, self.temperature)
        return self.load_avg, self.temperature

    def is_under_stress(self) -> bool:
        """Load or temperature at/over threshold on the last sample."""
        if self.load_avg is not None and self.load_avg >= self.cpu_load_threshold:
            return True
        if self.temperature is not None and self.temperature >= self.cpu_temp_threshold_c:
            return True
        return False


def is_system_stressed(
    cpu_load_threshold: float = DEFAULT_CPU_LOAD_THRESHOLD,
    cpu_temp_threshold_c: float = DEFAULT_CPU_TEMP_THRESHOLD_C,
) -> tuple[bool, Optional[float], Optional[float]]:
    """
    Check CPU load or temperature thresholds.
    Returns: (stressed: bool, load_ratio: float|None, temp_c: float|None)
    """
    monitor = PerformanceMonitor(cpu_load_threshold, cpu_temp_threshold_c)
    load_ratio, temp_c = monitor.sample()
    return monitor.is_under_stress(), load_ratio, temp_c
