"""
Pytest configuration and shared fixtures for Camera Dashboard tests.
"""

import os
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock, patch

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from PyQt6.QtCore import QCoreApplication  # noqa: E402

from core.camera import Camera, CaptureWorker, RecoveryPolicy, Settings  # noqa: E402

# 4x2 bgr24 frames keep raw payloads tiny
TINY_W = 4
TINY_H = 2
TINY_FRAME_BYTES = TINY_W * TINY_H * 3


@pytest.fixture(scope="session", autouse=True)
def qapp():
    """One QCoreApplication for the whole session (queued signals need it)."""
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([])
    yield app


def wait_until(predicate, timeout=3.0, interval=0.01) -> bool:
    """Poll ``predicate`` while pumping Qt events; True once it holds."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        app = QCoreApplication.instance()
        if app is not None:
            app.processEvents()
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def raw_frame(value: int = 0) -> bytes:
    return bytes([value % 256]) * TINY_FRAME_BYTES


class FakeProcess:
    """
    Stand-in for a running decode subprocess.

    Hands out ``chunks`` one per read. Afterwards ``then`` decides what
    happens: "stall" (reads time out), "eof" (stdout closes) or "loop"
    (start over from the first chunk).
    """

    def __init__(self, chunks=(), then="stall", read_delay=0.0):
        self.chunks = list(chunks)
        self.then = then
        self.read_delay = read_delay
        self.pid = 4242
        self.returncode = None
        self.terminated = False
        self.killed = False
        self.closed = False
        self._pos = 0
        self._done = threading.Event()

    def read(self, timeout):
        if self._done.is_set():
            return b""
        if self.read_delay:
            if self._done.wait(self.read_delay):
                return b""
        if self._pos >= len(self.chunks):
            if self.then == "loop" and self.chunks:
                self._pos = 0
            elif self.then == "eof":
                self.returncode = 1
                return b""
            else:
                if self._done.wait(timeout):
                    return b""
                return None
        chunk = self.chunks[self._pos]
        self._pos += 1
        return chunk

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        if self.returncode is None:
            self.returncode = -15
        self._done.set()

    def kill(self):
        self.killed = True
        self.returncode = -9
        self._done.set()

    def wait(self, timeout=None):
        return self.returncode

    def close(self):
        self.closed = True


def format_of(cmd) -> str:
    """Which ladder rung an ffmpeg command line was built for."""
    if "-input_format" not in cmd:
        return "auto"
    value = cmd[cmd.index("-input_format") + 1]
    return "yuyv" if value == "yuyv422" else value


class FakeSpawner:
    """
    Records every spawn and builds a FakeProcess per call.

    ``script`` maps a format name to a callable returning a FakeProcess
    (or raising OSError); unknown formats get a process that never
    produces output.
    """

    def __init__(self, script=None):
        self.script = dict(script or {})
        self.calls = []
        self.processes = []
        self._lock = threading.Lock()

    def __call__(self, cmd):
        fmt = format_of(cmd)
        with self._lock:
            self.calls.append(fmt)
        factory = self.script.get(fmt, lambda: FakeProcess())
        proc = factory()
        with self._lock:
            self.processes.append(proc)
        return proc

    def count(self, fmt=None) -> int:
        with self._lock:
            if fmt is None:
                return len(self.calls)
            return sum(1 for c in self.calls if c == fmt)


def streaming(read_delay=0.02):
    """Factory for a process that streams tiny raw frames forever."""
    return lambda: FakeProcess([raw_frame(i) for i in range(8)], then="loop", read_delay=read_delay)


@pytest.fixture
def tiny_settings() -> Settings:
    return Settings(width=TINY_W, height=TINY_H, fps=60, format="yuyv", max_cameras=3)


@pytest.fixture
def fast_policy() -> RecoveryPolicy:
    return RecoveryPolicy(
        stale_timeout_sec=0.3,
        first_frame_timeout_sec=0.3,
        restart_cooldown_sec=0.05,
        max_backoff_sec=0.2,
        max_restarts_per_window=50,
        restart_window_sec=30.0,
        stop_grace_sec=0.1,
        stream_retry_delay_sec=0.05,
    )


@pytest.fixture
def make_worker(tiny_settings, fast_policy):
    """Build CaptureWorkers on fake processes; every one is stopped at teardown."""
    created = []

    def factory(camera=None, sink=None, spawner=None, settings=None, policy=None):
        from core.framebuffer import FrameBuffer

        worker = CaptureWorker(
            camera or Camera("usb-1", "/dev/video0"),
            sink if sink is not None else FrameBuffer(),
            settings or tiny_settings,
            policy or fast_policy,
            spawn=spawner or FakeSpawner({"yuyv": streaming()}),
            check_device=False,
        )
        created.append(worker)
        return worker

    yield factory
    for worker in created:
        worker.stop()


@pytest.fixture
def temp_config_file() -> Generator[Path, None, None]:
    """Create a temporary config file for testing."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".ini", delete=False) as f:
        f.write("""
[logging]
level = INFO
file = ./logs/test.log
max_bytes = 1048576
backup_count = 2
stdout = false

[performance]
dynamic_fps = true
perf_check_interval_ms = 2000
min_dynamic_fps = 12
fps_step = 2
cpu_load_threshold = 0.75
cpu_temp_threshold_c = 75.0
stress_hold_count = 3
recover_hold_count = 3
stale_frame_timeout_sec = 1.5
restart_cooldown_sec = 5.0
max_restarts_per_window = 3
restart_window_sec = 30.0

[camera]
rescan_interval_ms = 15000
failed_camera_cooldown_sec = 30.0
slot_count = 3
kill_device_holders = false
start_stagger_ms = 250
use_buffers = true

[profile]
capture_width = 640
capture_height = 480
capture_fps = 20
capture_format = yuyv
ui_fps = 15

[health]
log_interval_sec = 30
""")
        f.flush()
        yield Path(f.name)
    os.unlink(f.name)


def udev_device(node, parent=None, capabilities=":capture:", product="USB Camera"):
    """A pyudev.Device look-alike for a video4linux node."""
    device = MagicMock()
    device.device_node = node
    device.sys_path = f"/sys/devices/virtual/video4linux/{node.rsplit('/', 1)[-1]}"
    props = {"ID_V4L_PRODUCT": product}
    if capabilities is not None:
        props["ID_V4L_CAPABILITIES"] = capabilities
    device.properties = props
    if parent is None:
        device.find_parent.return_value = None
    else:
        usb = MagicMock()
        usb.sys_path = parent
        device.find_parent.return_value = usb
    return device


@pytest.fixture
def mock_pyudev():
    """Mock pyudev for testing without real devices."""
    with patch("pyudev.Context") as mock_ctx:
        mock_context = MagicMock()
        mock_context.list_devices.return_value = [
            udev_device("/dev/video0", parent="/sys/devices/usb1/1-1"),
            udev_device("/dev/video1", parent="/sys/devices/usb1/1-1", capabilities=":meta:"),
            udev_device("/dev/video2", parent="/sys/devices/usb1/1-2"),
        ]
        mock_ctx.return_value = mock_context
        yield mock_ctx
