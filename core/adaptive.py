"""
Adaptive frame-rate control.

A closed loop re-evaluated on every telemetry sample:

    Probing -> Stable <-> Recovering -> Emergency

Probing walks the FPS up while the host stays cool, Stable holds the
sweet spot, Recovering steps down under stress and Emergency pins the
minimum until stress clears. Every change is pushed to the manager,
which hands it to each capture worker.
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Optional

from PyQt6.QtCore import QThread, pyqtSignal

from core.camera import DEFAULT_FPS
from core.performance import PerformanceMonitor

# Global bounds no configuration can widen
MIN_FPS = 10
MAX_FPS = 30

DEFAULT_FPS_STEP = 2
DEFAULT_STRESS_HOLD_COUNT = 3
DEFAULT_RECOVER_HOLD_COUNT = 3
DEFAULT_REPROBE_INTERVAL_COUNT = 10
DEFAULT_PERF_CHECK_INTERVAL_MS = 2000
STALE_STRESS_RATIO = 0.5


class ControlState(enum.Enum):
    PROBING = "Probing"
    STABLE = "Stable"
    RECOVERING = "Recovering"
    EMERGENCY = "Emergency"


class AdaptiveController(QThread):
    fps_changed = pyqtSignal(int)
    state_changed = pyqtSignal(str)

    def __init__(self, manager=None, config=None, monitor=None, logger=None, parent=None):
        super().__init__(parent)
        self._manager = manager
        self._log = logger or logging.getLogger("camera_dashboard.adaptive")
        self._lock = threading.RLock()
        self._wake = threading.Event()
        self._running = False

        if config is None:
            capture_fps = DEFAULT_FPS
            self._dynamic = False
            self._step = DEFAULT_FPS_STEP
            self._stress_hold = DEFAULT_STRESS_HOLD_COUNT
            self._recover_hold = DEFAULT_RECOVER_HOLD_COUNT
            self._reprobe_interval = DEFAULT_REPROBE_INTERVAL_COUNT
            self._interval_ms = DEFAULT_PERF_CHECK_INTERVAL_MS
            self._stale_timeout = 1.5
            min_dynamic = MIN_FPS
        else:
            capture_fps = config.capture_fps
            self._dynamic = bool(config.dynamic_fps)
            self._step = max(1, config.fps_step)
            self._stress_hold = config.stress_hold_count
            self._recover_hold = config.recover_hold_count
            self._reprobe_interval = config.reprobe_interval_count
            self._interval_ms = config.perf_check_interval_ms
            self._stale_timeout = config.stale_frame_timeout_sec
            min_dynamic = config.min_dynamic_fps

        if self._dynamic:
            self.max_fps = min(int(capture_fps), MAX_FPS)
            self.min_fps = min(max(int(min_dynamic), MIN_FPS), self.max_fps)
        else:
            self.max_fps = self.min_fps = int(capture_fps)

        if monitor is None:
            if config is not None:
                monitor = PerformanceMonitor(config.cpu_load_threshold, config.cpu_temp_threshold_c)
            else:
                monitor = PerformanceMonitor()
        self.monitor = monitor

        self._current_fps = self.max_fps
        self._sweet_spot_fps = self.max_fps
        self._last_good_fps: Optional[int] = None
        self._state = ControlState.PROBING
        self.adjust_count = 0
        self._stress_count = 0
        self._calm_count = 0
        self._stable_samples = 0

    # ------------------------------------------------------------
    # Public accessors
    # ------------------------------------------------------------
    def get_current_fps(self) -> int:
        return self._current_fps

    def get_state(self) -> str:
        return self._state.value

    def is_dynamic(self) -> bool:
        return self._dynamic

    def get_sweet_spot_fps(self) -> int:
        return self._sweet_spot_fps

    # ------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------
    def start(self):
        if not self._dynamic:
            self._log.info("Adaptive FPS disabled, fixed at %d FPS", self._current_fps)
            return
        self._running = True
        self._wake.clear()
        super().start()

    def stop(self):
        self._running = False
        self._wake.set()
        if self.isRunning() and QThread.currentThread() is not self:
            self.wait(self._interval_ms + 2000)

    def run(self):
        self._log.info(
            "Adaptive FPS started (range %d-%d, start %d, every %dms)",
            self.min_fps, self.max_fps, self._current_fps, self._interval_ms,
        )
        while self._running:
            try:
                self.sample_once()
            except Exception:
                self._log.exception("Adaptive FPS sample failed")
            self._wake.wait(self._interval_ms / 1000.0)
        self._log.info("Adaptive FPS stopped at %d FPS (%s)", self._current_fps, self.get_state())

    def sample_once(self) -> int:
        """Take one telemetry sample and run one control step."""
        load, temp = self.monitor.sample()
        stressed = self.monitor.is_under_stress()
        stale = 0.0
        if self._manager is not None:
            stale = self._manager.stale_ratio(self._stale_timeout)
            if stale > STALE_STRESS_RATIO:
                stressed = True
        self._log.debug(
            "Sample load=%s temp=%s stale=%.2f stressed=%s",
            f"{load:.2f}" if load is not None else "n/a",
            f"{temp:.1f}C" if temp is not None else "n/a",
            stale, stressed,
        )
        return self.evaluate(stressed)

    def evaluate(self, stressed: bool) -> int:
        """Advance the state machine by one sample; returns the FPS in force."""
        if not self._dynamic:
            return self._current_fps
        with self._lock:
            if stressed:
                self._stress_count += 1
                self._calm_count = 0
            else:
                self._calm_count += 1
                self._stress_count = 0

            if stressed and self._stress_count > self._stress_hold \
                    and self._state is not ControlState.EMERGENCY:
                self._enter_emergency()
            elif self._state is ControlState.PROBING:
                self._step_probing(stressed)
            elif self._state is ControlState.STABLE:
                self._step_stable(stressed)
            elif self._state is ControlState.RECOVERING:
                self._step_recovering(stressed)
            else:
                self._step_emergency(stressed)
            return self._current_fps

    def _step_probing(self, stressed: bool):
        cur = self._current_fps
        if stressed:
            if self._last_good_fps is not None and self._last_good_fps < cur:
                sweet = self._last_good_fps
            else:
                sweet = max(self.min_fps, cur - self._step)
            self._sweet_spot_fps = sweet
            self._log.info(
                "Stress while probing at %d FPS, sweet spot %d FPS", cur, sweet
            )
            self._transition(ControlState.RECOVERING)
            self.change_fps(sweet)
            return
        if self._calm_count < self._recover_hold:
            return
        self._calm_count = 0
        self._last_good_fps = cur
        if cur < self.max_fps:
            self.change_fps(cur + self._step)
        else:
            self._sweet_spot_fps = cur
            self._transition(ControlState.STABLE)

    def _step_stable(self, stressed: bool):
        if stressed:
            self._transition(ControlState.RECOVERING)
            self.change_fps(self._current_fps - self._step)
            return
        self._stable_samples += 1
        if self._stable_samples >= self._reprobe_interval and self._current_fps < self.max_fps:
            self._last_good_fps = self._current_fps
            self._calm_count = 0
            self._transition(ControlState.PROBING)

    def _step_recovering(self, stressed: bool):
        if stressed:
            if self._current_fps <= self.min_fps:
                self._enter_emergency()
            else:
                self.change_fps(self._current_fps - self._step)
            return
        if self._calm_count >= self._recover_hold:
            self._calm_count = 0
            self._transition(ControlState.STABLE)

    def _step_emergency(self, stressed: bool):
        if stressed:
            self.change_fps(self.min_fps)
            return
        self._set_emergency_skip(False)
        self._transition(ControlState.RECOVERING)

    def _enter_emergency(self):
        self._transition(ControlState.EMERGENCY)
        self.change_fps(self.min_fps)
        self._set_emergency_skip(True)

    # ------------------------------------------------------------
    # Actuation
    # ------------------------------------------------------------
    def change_fps(self, target: int) -> bool:
        """Clamp to [min_fps, max_fps] and apply; no-op if unchanged."""
        target = max(self.min_fps, min(self.max_fps, int(target)))
        with self._lock:
            if target == self._current_fps:
                return False
            old = self._current_fps
            self._current_fps = target
            self.adjust_count += 1
        self._log.info("FPS %d -> %d (%s)", old, target, self.get_state())
        if self._manager is not None:
            self._manager.set_fps(target)
        self.fps_changed.emit(target)
        return True

    def _transition(self, state: ControlState):
        if state is self._state:
            return
        self._log.info("Adaptive state %s -> %s at %d FPS",
                       self._state.value, state.value, self._current_fps)
        self._state = state
        self._stable_samples = 0
        self.state_changed.emit(state.value)

    def _set_emergency_skip(self, enabled: bool):
        if self._manager is not None:
            self._manager.set_emergency_skip(enabled)
