"""
Per-camera capture.

Each CaptureWorker runs on its own QThread, owns at most one ffmpeg
subprocess at a time and publishes decoded frames into the camera's
frame sink. Failures walk the format ladder, then cool down and start
over; nothing a camera does can stop another camera's worker.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Optional

from PyQt6.QtCore import QThread, pyqtSignal

from core.errors import CameraStartError, RestartLimitError
from core.stream import (
    DecodeError,
    build_ffmpeg_command,
    build_format_ladder,
    make_decoder,
    spawn_ffmpeg,
    stop_process,
)

DEFAULT_WIDTH = 640
DEFAULT_HEIGHT = 480
DEFAULT_FPS = 15
DEFAULT_FORMAT = "mjpeg"
DEFAULT_MAX_CAMERAS = 3

# Reconnection settings
MAX_RECONNECT_BACKOFF_SEC = 10.0
RECONNECT_BACKOFF_MULTIPLIER = 1.5
MAX_CONSECUTIVE_DECODE_ERRORS = 5


@dataclass(frozen=True)
class Camera:
    """A discovered camera. device_id is the USB parent and survives replugging."""

    device_id: str
    device_path: str
    name: str = ""

    @property
    def index(self) -> Optional[int]:
        tail = self.device_path.rsplit("video", 1)[-1]
        return int(tail) if tail.isdigit() else None


@dataclass(frozen=True)
class Settings:
    """Capture settings shared by every worker."""

    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    fps: int = DEFAULT_FPS
    format: str = DEFAULT_FORMAT
    max_cameras: int = DEFAULT_MAX_CAMERAS

    def with_defaults(self) -> "Settings":
        """Replace zero or empty fields with the defaults."""
        return replace(
            self,
            width=self.width or DEFAULT_WIDTH,
            height=self.height or DEFAULT_HEIGHT,
            fps=self.fps or DEFAULT_FPS,
            format=self.format or DEFAULT_FORMAT,
            max_cameras=self.max_cameras or DEFAULT_MAX_CAMERAS,
        )


def default_settings() -> Settings:
    return Settings()


@dataclass(frozen=True)
class RecoveryPolicy:
    """Timeouts and limits that govern how a worker recovers."""

    stale_timeout_sec: float = 1.5
    first_frame_timeout_sec: float = 5.0
    restart_cooldown_sec: float = 5.0
    max_backoff_sec: float = MAX_RECONNECT_BACKOFF_SEC
    max_restarts_per_window: int = 3
    restart_window_sec: float = 30.0
    stop_grace_sec: float = 1.0
    stream_retry_delay_sec: float = 0.5


class WorkerState(enum.Enum):
    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPING = "Stopping"
    RESTARTING = "Restarting"


class CaptureWorker(QThread):
    status_changed = pyqtSignal(bool)
    state_changed = pyqtSignal(str)
    restart_limited = pyqtSignal(str)

    def __init__(
        self,
        camera: Camera,
        sink,
        settings: Settings,
        policy: Optional[RecoveryPolicy] = None,
        spawn: Callable = spawn_ffmpeg,
        check_device: bool = True,
        logger: Optional[logging.Logger] = None,
        parent=None,
    ):
        """Set up state; nothing is spawned until start()."""
        super().__init__(parent)
        self.camera = camera
        self.sink = sink
        self.settings = settings
        self.policy = policy or RecoveryPolicy()
        self._spawn_process = spawn
        self._check_device = check_device
        self._log = logger or logging.getLogger("camera_dashboard.capture")

        self.ladder = build_format_ladder(settings.format)
        self._format_index = 0
        self._consecutive_failures = 0
        self._backoff = self.policy.restart_cooldown_sec
        self._last_restart = 0.0
        self._restart_times: deque = deque()
        self._restart_lock = threading.Lock()
        self._restart_limited = False
        self.restart_count = 0

        # _running and _proc only change under _proc_lock so stop() and a
        # spawn can never interleave.
        self._proc_lock = threading.Lock()
        self._running = False
        self._proc = None
        self._wake = threading.Event()

        self._state = WorkerState.STOPPED
        self._online = False

        self._target_fps = float(settings.fps)
        self._emit_interval = 1.0 / max(1.0, self._target_fps)
        self._last_emit = 0.0
        self._emergency_skip = False
        self._skip_toggle = False

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------
    def start(self):
        """Begin capturing from the first format of the ladder."""
        if self._check_device and not os.path.exists(self.camera.device_path):
            raise CameraStartError(f"device {self.camera.device_path} not present")
        with self._proc_lock:
            if self._running and self.isRunning():
                return
            self._running = True
            self._wake.clear()
            self._format_index = 0
            self._consecutive_failures = 0
            self._backoff = self.policy.restart_cooldown_sec
        self._set_state(WorkerState.STARTING)
        super().start()
        self._log.info("Camera %s capture starting", self.camera.device_path)

    def stop(self):
        """Stop capture and wait for the thread; safe to call repeatedly."""
        with self._proc_lock:
            was_running = self._running
            self._running = False
            proc = self._proc
        self._wake.set()
        if was_running:
            self._set_state(WorkerState.STOPPING)
        if proc is not None:
            try:
                proc.terminate()
            except OSError:
                pass

        if self.isRunning() and QThread.currentThread() is not self:
            grace_ms = int((self.policy.stop_grace_sec * 2 + 1.0) * 1000)
            if not self.wait(grace_ms):
                self._log.warning("Camera %s thread did not stop in time", self.camera.device_path)
        self._release_process()
        self._set_online(False)
        self._set_state(WorkerState.STOPPED)
        if was_running:
            self._log.info("Camera %s capture stopped", self.camera.device_path)

    def restart(self):
        """Stop and start only this camera."""
        if self._restart_window_full():
            raise RestartLimitError(
                f"camera {self.camera.device_id} exceeded "
                f"{self.policy.max_restarts_per_window} restarts in "
                f"{self.policy.restart_window_sec:.0f}s"
            )
        self._log.info("Camera %s restart requested", self.camera.device_path)
        self.stop()
        self._record_restart()
        self.start()

    def set_fps(self, fps):
        """Change frame pacing; the subprocess keeps running."""
        if fps is None:
            return
        try:
            fps = float(fps)
        except (TypeError, ValueError):
            self._log.warning("Ignoring invalid FPS %r for %s", fps, self.camera.device_path)
            return
        if fps <= 0:
            return
        self._target_fps = fps
        self._emit_interval = 1.0 / max(1.0, fps)

    def set_emergency_skip(self, enabled: bool):
        self._emergency_skip = bool(enabled)

    # ------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------
    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def target_fps(self) -> float:
        return self._target_fps

    @property
    def format_index(self) -> int:
        return self._format_index

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def current_format(self) -> Optional[str]:
        if self._format_index < len(self.ladder):
            return self.ladder[self._format_index].name
        return None

    def is_running(self) -> bool:
        return self._running

    def is_online(self) -> bool:
        return self._online

    def is_restart_limited(self) -> bool:
        return self._restart_limited

    def has_process(self) -> bool:
        return self._proc is not None

    def is_healthy(self) -> bool:
        """Thread alive and frames flowing (or still coming up)."""
        if not self._running or not self.isRunning():
            return False
        if self._state in (WorkerState.STARTING, WorkerState.RESTARTING):
            return True
        last = self.sink.get_last_frame_time()
        return last > 0 and (time.time() - last) <= self.policy.stale_timeout_sec

    # ------------------------------------------------------------
    # Capture thread
    # ------------------------------------------------------------
    def run(self):
        self._log.info("Camera %s thread started", self.camera.device_path)
        try:
            self._capture_loop()
        except Exception:
            self._log.exception("Exception in CaptureWorker %s", self.camera.device_path)
        finally:
            self._release_process()
            self._set_online(False)
            self._set_state(WorkerState.STOPPED)
            self._log.info("Camera %s thread stopped", self.camera.device_path)

    def _capture_loop(self):
        while self._running:
            if self._format_index >= len(self.ladder):
                if not self._cool_down():
                    return
                continue

            fmt = self.ladder[self._format_index]
            proc = self._spawn(fmt)
            if proc is None:
                if not self._running:
                    return
                self._advance_format(fmt.name, "spawn failed")
                continue

            published, reason = self._pump(proc, fmt)
            self._release_process()
            self._set_online(False)
            if not self._running:
                return

            if published:
                # The format works; the stream itself went away.
                self._log.warning(
                    "Camera %s stream lost (%s) after %d frames, respawning %s",
                    self.camera.device_path, reason, published, fmt.name,
                )
                if not self._record_restart():
                    if not self._hold_for_window():
                        return
                elif self._sleep(self.policy.stream_retry_delay_sec):
                    return
                self._set_state(WorkerState.STARTING)
            else:
                self._advance_format(fmt.name, reason)

    def _spawn(self, fmt):
        """Spawn the decoder for ``fmt`` unless stop() got here first."""
        s = self.settings
        cmd = build_ffmpeg_command(self.camera.device_path, fmt, s.width, s.height, s.fps)
        with self._proc_lock:
            if not self._running:
                return None
            try:
                self._proc = self._spawn_process(cmd)
            except (OSError, ValueError) as e:
                self._log.warning("Camera %s failed to spawn decoder (%s): %s",
                                  self.camera.device_path, fmt.name, e)
                self._proc = None
                return None
            proc = self._proc
        self._log.info("Camera %s decoder started (format=%s, %dx%d@%d)",
                       self.camera.device_path, fmt.name, s.width, s.height, s.fps)
        return proc

    def _pump(self, proc, fmt) -> tuple[int, str]:
        """Read frames until the process dies, stalls or we are stopped."""
        decoder = make_decoder(fmt, self.settings.width, self.settings.height)
        published = 0
        decode_errors = 0
        last_frame = time.monotonic()
        read_timeout = min(0.2, self.policy.stale_timeout_sec)

        while self._running:
            try:
                data = proc.read(read_timeout)
            except (OSError, ValueError) as e:
                return published, f"read error: {e}"

            now = time.monotonic()
            if data is None:
                limit = (self.policy.stale_timeout_sec if published
                         else self.policy.first_frame_timeout_sec)
                if now - last_frame > limit:
                    return published, f"no frame for {limit:.1f}s"
                continue
            if not data:
                return published, f"decoder exited ({proc.poll()})"

            try:
                payloads = decoder.feed(data)
            except DecodeError as e:
                return published, str(e)

            for payload in payloads:
                last_frame = now
                if not self._should_publish(now):
                    self.sink.mark_dropped()
                    continue
                try:
                    image = decoder.decode(payload)
                except DecodeError as e:
                    decode_errors += 1
                    self.sink.mark_dropped()
                    if decode_errors >= MAX_CONSECUTIVE_DECODE_ERRORS:
                        return published, f"decode error: {e}"
                    continue
                decode_errors = 0
                self.sink.write(image)
                published += 1
                if published == 1:
                    self._on_first_frame(fmt.name)
        return published, "stopped"

    def _should_publish(self, now: float) -> bool:
        # Small slack so camera jitter at exactly the target rate is not halved
        if now - self._last_emit < self._emit_interval * 0.9:
            return False
        if self._emergency_skip:
            self._skip_toggle = not self._skip_toggle
            if self._skip_toggle:
                return False
        self._last_emit = now
        return True

    def _on_first_frame(self, fmt_name: str):
        self._consecutive_failures = 0
        self._backoff = self.policy.restart_cooldown_sec
        self._set_state(WorkerState.RUNNING)
        self._set_online(True)
        self._log.info("Camera %s streaming (%s)", self.camera.device_path, fmt_name)

    def _advance_format(self, fmt_name: str, reason: str):
        self._consecutive_failures += 1
        self._format_index += 1
        nxt = self.current_format
        self._log.warning(
            "Camera %s format %s failed (%s)%s",
            self.camera.device_path, fmt_name, reason,
            f", falling back to {nxt}" if nxt else "",
        )

    def _cool_down(self) -> bool:
        """Ladder exhausted: wait out the backoff and start over. False means stop."""
        self._set_state(WorkerState.RESTARTING)
        if not self._record_restart():
            if not self._hold_for_window():
                return False
        delay = self._backoff
        self._backoff = min(
            self._backoff * RECONNECT_BACKOFF_MULTIPLIER,
            max(self.policy.max_backoff_sec, self.policy.restart_cooldown_sec),
        )
        self._log.warning(
            "Camera %s: all formats failed, retrying in %.1fs", self.camera.device_path, delay
        )
        if self._sleep(delay):
            return False
        self._format_index = 0
        self._set_state(WorkerState.STARTING)
        return self._running

    def _hold_for_window(self) -> bool:
        """Sit in Stopped until the restart window has room again."""
        with self._restart_lock:
            oldest = self._restart_times[0] if self._restart_times else time.monotonic()
        remaining = max(0.0, oldest + self.policy.restart_window_sec - time.monotonic())
        self._set_state(WorkerState.STOPPED)
        self._restart_limited = True
        msg = (f"camera {self.camera.device_id} hit {self.policy.max_restarts_per_window} "
               f"restarts in {self.policy.restart_window_sec:.0f}s, holding {remaining:.1f}s")
        self._log.warning("Camera %s restart limit reached, holding %.1fs",
                          self.camera.device_path, remaining)
        self.restart_limited.emit(msg)
        stopped = self._sleep(remaining)
        self._restart_limited = False
        if stopped or not self._running:
            return False
        self._record_restart()
        self._set_state(WorkerState.RESTARTING)
        return True

    # ------------------------------------------------------------
    # Restart window
    # ------------------------------------------------------------
    def _prune_restarts(self, now: float):
        window = self.policy.restart_window_sec
        while self._restart_times and now - self._restart_times[0] > window:
            self._restart_times.popleft()

    def _restart_window_full(self) -> bool:
        with self._restart_lock:
            self._prune_restarts(time.monotonic())
            return len(self._restart_times) >= self.policy.max_restarts_per_window

    def _record_restart(self) -> bool:
        """Count a restart; False if the window is already full."""
        now = time.monotonic()
        with self._restart_lock:
            self._prune_restarts(now)
            if len(self._restart_times) >= self.policy.max_restarts_per_window:
                return False
            self._restart_times.append(now)
            self._last_restart = now
            self.restart_count += 1
            return True

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------
    def _sleep(self, seconds: float) -> bool:
        """Interruptible sleep. True if stop() was requested."""
        if seconds > 0:
            self._wake.wait(seconds)
        return not self._running

    def _release_process(self):
        with self._proc_lock:
            proc = self._proc
            self._proc = None
        if proc is not None:
            stop_process(proc, self.policy.stop_grace_sec, self._log)

    def _set_online(self, online: bool):
        if online != self._online:
            self._online = online
            self.status_changed.emit(online)

    def _set_state(self, state: WorkerState):
        if state != self._state:
            self._state = state
            self.state_changed.emit(state.value)
