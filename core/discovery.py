"""
Camera discovery and hot-plug scanning.

Cameras are identified by their USB parent, not their /dev/video node:
a UVC camera usually exposes a capture node plus a metadata node, and the
node number can change on every replug. Enumeration collapses each
physical device to the first capture node seen for it.
"""

from __future__ import annotations

import glob as glob_module
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import cv2
import pyudev
from PyQt6.QtCore import QThread, pyqtSignal

from core.camera import Camera, Settings
from utils.helpers import kill_device_holders

DEFAULT_RESCAN_INTERVAL_MS = 15000
DEFAULT_FAILED_COOLDOWN_SEC = 30.0

log = logging.getLogger("camera_dashboard.discovery")


@dataclass(frozen=True)
class VideoNode:
    device_path: str
    parent_id: str
    name: str = ""

    @property
    def index(self) -> int:
        tail = self.device_path.rsplit("video", 1)[-1]
        return int(tail) if tail.isdigit() else 1 << 30


def get_video_indexes() -> list[int]:
    """List integer indices for /dev/video* devices."""
    indexes = []
    for device in glob_module.glob("/dev/video*"):
        tail = device.split("video")[-1]
        if tail.isdigit():
            indexes.append(int(tail))
    return sorted(indexes)


def _has_capture(device) -> bool:
    caps = device.properties.get("ID_V4L_CAPABILITIES")
    if not isinstance(caps, str) or not caps:
        return True
    return "capture" in caps.split(":")


def resolve_usb_parent(device) -> str:
    """sys path of the owning USB device; the node's own path if it has none."""
    parent = device.find_parent("usb", "usb_device")
    if parent is not None:
        return parent.sys_path
    return device.sys_path


def list_video_nodes(context: Optional[pyudev.Context] = None) -> list[VideoNode]:
    """All capture-capable video4linux nodes, ordered by node number."""
    context = context or pyudev.Context()
    nodes = []
    for device in context.list_devices(subsystem="video4linux"):
        node = device.device_node
        if not node or not _has_capture(device):
            continue
        props = device.properties
        name = props.get("ID_V4L_PRODUCT") or props.get("ID_MODEL") or ""
        nodes.append(VideoNode(node, resolve_usb_parent(device), str(name)))
    nodes.sort(key=lambda n: n.index)
    return nodes


def dedupe_nodes(nodes: Iterable[VideoNode]) -> list[Camera]:
    """One Camera per USB parent; the first node seen for a parent wins."""
    seen: dict[str, Camera] = {}
    for node in nodes:
        if node.parent_id in seen:
            log.debug("Skipping %s, %s already covers %s",
                      node.device_path, seen[node.parent_id].device_path, node.parent_id)
            continue
        seen[node.parent_id] = Camera(node.parent_id, node.device_path, node.name)
    return list(seen.values())


def test_single_camera(
    device_path: str,
    retries: int = 3,
    retry_delay: float = 0.2,
    allow_kill: bool = True,
    kill_enabled: bool = True,
    post_kill_retries: int = 2,
    post_kill_delay: float = 0.25,
    holder_killer: Callable[[str, bool], bool] = kill_device_holders,
) -> Optional[str]:
    """Try to open and grab a frame from one camera node."""

    def try_open():
        cap = cv2.VideoCapture(device_path, cv2.CAP_V4L2)
        try:
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
            if not cap.isOpened():
                return False
            if not cap.grab():
                return False
            return True
        finally:
            cap.release()

    for _ in range(retries):
        if try_open():
            return device_path
        time.sleep(retry_delay)

    if allow_kill and kill_enabled:
        try:
            killed = holder_killer(device_path, kill_enabled)
        except Exception:
            log.warning("Holder cleanup for %s failed", device_path, exc_info=True)
            killed = False
        if killed:
            for _ in range(post_kill_retries):
                if try_open():
                    return device_path
                time.sleep(post_kill_delay)

    return None


def discover_cameras(
    settings: Settings,
    probe: bool = True,
    kill_enabled: bool = True,
    list_nodes: Callable[[], list[VideoNode]] = list_video_nodes,
    probe_fn: Optional[Callable[[str], Optional[str]]] = None,
    logger: Optional[logging.Logger] = None,
) -> list[Camera]:
    """Return working cameras in node order, at most settings.max_cameras."""
    lg = logger or log
    cameras = dedupe_nodes(list_nodes())
    if not cameras:
        lg.info("No video capture devices found")
        return []
    lg.info("Found %d physical camera(s): %s", len(cameras), [c.device_path for c in cameras])

    if probe:
        if probe_fn is None:
            def probe_fn(path):
                return test_single_camera(path, kill_enabled=kill_enabled)
        max_workers = min(4, len(cameras))
        lg.info("Testing %d cameras concurrently (workers=%d)...", len(cameras), max_workers)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(lambda c: probe_fn(c.device_path), cameras))
        working = []
        for cam, ok in zip(cameras, results):
            if ok:
                working.append(cam)
            else:
                lg.warning("Camera %s (%s) failed probe", cam.device_path, cam.device_id)
        cameras = working

    limit = settings.max_cameras
    if limit and len(cameras) > limit:
        lg.info("Limiting to %d of %d cameras", limit, len(cameras))
        cameras = cameras[:limit]
    lg.info("FINAL Working cameras: %s", [c.device_path for c in cameras])
    return cameras


class DeviceScanner(QThread):
    """Periodically diffs the set of physical cameras and reports changes."""

    camera_attached = pyqtSignal(object)
    camera_detached = pyqtSignal(object)

    def __init__(
        self,
        interval_ms: int = DEFAULT_RESCAN_INTERVAL_MS,
        list_nodes: Callable[[], list[VideoNode]] = list_video_nodes,
        probe: Optional[Callable[[str], Optional[str]]] = None,
        failed_cooldown_sec: float = DEFAULT_FAILED_COOLDOWN_SEC,
        logger: Optional[logging.Logger] = None,
        parent=None,
    ):
        super().__init__(parent)
        self.interval_ms = interval_ms
        self._list_nodes = list_nodes
        self._probe = probe
        self._failed_cooldown = failed_cooldown_sec
        self._log = logger or log
        self._lock = threading.Lock()
        self._tracked: dict[str, Camera] = {}
        self._failed: dict[str, float] = {}
        self._running = False
        self._wake = threading.Event()

    def track(self, cameras: Iterable[Camera]) -> None:
        """Seed the tracked set, e.g. with the manager's initial discovery."""
        with self._lock:
            self._tracked = {c.device_id: c for c in cameras}
            self._failed.clear()

    def tracked(self) -> list[Camera]:
        with self._lock:
            return list(self._tracked.values())

    def scan_once(self) -> tuple[list[Camera], list[Camera]]:
        """Enumerate, diff against the tracked set, emit and return (attached, detached)."""
        try:
            current = {c.device_id: c for c in dedupe_nodes(self._list_nodes())}
        except (OSError, pyudev.DeviceNotFoundError):
            self._log.warning("Device enumeration failed", exc_info=True)
            return [], []

        now = time.monotonic()
        attached: list[Camera] = []
        detached: list[Camera] = []
        candidates: list[Camera] = []
        with self._lock:
            for dev_id, cam in list(self._tracked.items()):
                new = current.get(dev_id)
                if new is None or new.device_path != cam.device_path:
                    detached.append(cam)
                    del self._tracked[dev_id]

            for dev_id, cam in current.items():
                if dev_id in self._tracked:
                    continue
                last_failed = self._failed.get(dev_id)
                if last_failed is not None and (now - last_failed) < self._failed_cooldown:
                    continue
                candidates.append(cam)

        # Probing opens the device and may sleep; keep it outside the lock
        for cam in candidates:
            if self._probe is not None and not self._probe(cam.device_path):
                with self._lock:
                    self._failed[cam.device_id] = now
                self._log.info("Camera %s not ready, retry after %.0fs",
                               cam.device_path, self._failed_cooldown)
                continue
            with self._lock:
                self._failed.pop(cam.device_id, None)
                self._tracked[cam.device_id] = cam
            attached.append(cam)

        for cam in detached:
            self._log.info("Camera detached: %s (%s)", cam.device_path, cam.device_id)
            self.camera_detached.emit(cam)
        for cam in attached:
            self._log.info("Camera attached: %s (%s)", cam.device_path, cam.device_id)
            self.camera_attached.emit(cam)
        return attached, detached

    def start(self):
        self._running = True
        self._wake.clear()
        super().start()

    def stop(self):
        self._running = False
        self._wake.set()
        if self.isRunning() and QThread.currentThread() is not self:
            self.wait(5000)

    def run(self):
        self._log.info("Hot-plug scanner started (every %dms)", self.interval_ms)
        while self._running:
            self._wake.wait(self.interval_ms / 1000.0)
            if not self._running:
                break
            try:
                self.scan_once()
            except Exception:
                self._log.exception("Hot-plug scan failed")
        self._log.info("Hot-plug scanner stopped")
