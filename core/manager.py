"""
Multi-camera manager.

Owns one frame sink and one capture worker per camera. The camera and
worker tables sit behind a single reader/writer lock that is never held
while a worker blocks (spawning, stopping, staggered start), so a slow
camera cannot hold up the others.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Optional

from PyQt6.QtCore import QReadWriteLock

from core.camera import Camera, CaptureWorker, RecoveryPolicy, Settings
from core.discovery import discover_cameras
from core.errors import (
    CameraNotFoundError,
    CameraStartError,
    ManagerNotInitializedError,
)
from core.framebuffer import FrameBuffer, FrameQueue

DEFAULT_START_STAGGER_SEC = 0.5


class CameraManager:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        use_buffers: bool = True,
        policy: Optional[RecoveryPolicy] = None,
        discover: Optional[Callable[[Settings], list[Camera]]] = None,
        worker_factory: Optional[Callable[[Camera, object], CaptureWorker]] = None,
        start_stagger_sec: float = DEFAULT_START_STAGGER_SEC,
        queue_size: int = 1,
        logger: Optional[logging.Logger] = None,
    ):
        self._settings = (settings or Settings()).with_defaults()
        self._use_buffers = use_buffers
        self._policy = policy or RecoveryPolicy()
        self._discover = discover or discover_cameras
        self._worker_factory = worker_factory or self._default_worker
        self._start_stagger = max(0.0, start_stagger_sec)
        self._queue_size = queue_size
        self._log = logger or logging.getLogger("camera_dashboard.manager")

        self._lock = QReadWriteLock()
        self._cameras: list[Camera] = []
        self._workers: dict[str, CaptureWorker] = {}
        self._sinks: dict = {}
        # Sinks of detached cameras, handed back if the same USB parent returns
        self._retired_sinks: dict = {}
        self._pending: list[Camera] = []
        # Detached parent id -> id of the queued camera that took its slot
        self._promoted: dict[str, str] = {}
        self._initialized = False
        self._started = False
        self._fps = self._settings.fps
        self._emergency_skip = False

    @contextmanager
    def _reading(self):
        self._lock.lockForRead()
        try:
            yield
        finally:
            self._lock.unlock()

    @contextmanager
    def _writing(self):
        self._lock.lockForWrite()
        try:
            yield
        finally:
            self._lock.unlock()

    def _default_worker(self, camera: Camera, sink) -> CaptureWorker:
        return CaptureWorker(camera, sink, self._settings, self._policy)

    def _new_sink(self):
        if self._use_buffers:
            return FrameBuffer()
        return FrameQueue(self._queue_size)

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------
    def initialize(self) -> None:
        """Stop whatever runs, rediscover, build (but do not start) workers."""
        self._log.info("Stopping existing workers...")
        self.stop()

        self._log.info("Discovering cameras...")
        cameras = list(self._discover(self._settings))
        limit = self._settings.max_cameras
        if limit and len(cameras) > limit:
            cameras = cameras[:limit]
        self._log.info("Found %d cameras", len(cameras))

        with self._writing():
            self._cameras = []
            self._workers = {}
            self._sinks = {}
            self._retired_sinks = {}
            self._pending = []
            self._promoted = {}
            for cam in cameras:
                self._log.info("Creating worker for camera %s (%s) [buffer mode: %s]",
                               cam.device_id, cam.device_path, self._use_buffers)
                sink = self._new_sink()
                worker = self._worker_factory(cam, sink)
                worker.set_fps(self._fps)
                self._cameras.append(cam)
                self._sinks[cam.device_id] = sink
                self._workers[cam.device_id] = worker
            self._initialized = True
            self._started = False
        self._log.info("Initialization complete")

    def start(self) -> None:
        """Start workers in discovery order, staggered to spare the USB bus."""
        with self._writing():
            if not self._initialized:
                raise ManagerNotInitializedError()
            order = [(cam, self._workers[cam.device_id]) for cam in self._cameras]
            self._started = True

        for i, (cam, worker) in enumerate(order):
            if i > 0 and self._start_stagger > 0:
                self._log.info("Waiting %dms before starting camera %d to reduce USB contention",
                               int(self._start_stagger * 1000), i + 1)
                time.sleep(self._start_stagger)
            try:
                worker.start()
            except CameraStartError:
                self._log.error("Failed to start camera %s; %d camera(s) left unstarted",
                                cam.device_path, len(order) - i - 1)
                raise
            self._log.info("Started camera %d/%d (%s)", i + 1, len(order), cam.device_path)

    def stop(self) -> None:
        """Stop every worker; a no-op when nothing was initialized."""
        with self._writing():
            workers = list(self._workers.values())
            sinks = list(self._sinks.values()) + list(self._retired_sinks.values())
            self._cameras = []
            self._workers = {}
            self._sinks = {}
            self._retired_sinks = {}
            self._pending = []
            self._promoted = {}
            self._initialized = False
            self._started = False
        if not workers:
            return

        with ThreadPoolExecutor(max_workers=len(workers)) as executor:
            list(executor.map(self._stop_worker, workers))
        for sink in sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                close()
        self._log.info("Stopped %d camera worker(s)", len(workers))

    def _stop_worker(self, worker: CaptureWorker) -> None:
        try:
            worker.stop()
        except Exception:
            self._log.exception("Error stopping camera %s", worker.camera.device_path)

    def restart_camera(self, camera_id: str) -> None:
        """Restart one camera; every other camera keeps streaming."""
        with self._reading():
            worker = self._workers.get(camera_id)
        if worker is None:
            raise CameraNotFoundError(f"camera {camera_id} not found")
        self._log.info("Restarting camera %s (other cameras unaffected)", camera_id)
        worker.restart()

    def restart_camera_by_index(self, index: int) -> None:
        with self._reading():
            if index < 0 or index >= len(self._cameras):
                raise CameraNotFoundError(f"camera index {index} out of range")
            worker = self._workers.get(self._cameras[index].device_id)
        if worker is None:
            raise CameraNotFoundError(f"camera at index {index} has no worker")
        self._log.info("Restarting camera at index %d (other cameras unaffected)", index)
        worker.restart()

    # ------------------------------------------------------------
    # Hot-plug
    # ------------------------------------------------------------
    def handle_attached(self, camera: Camera) -> None:
        """Bring up a worker for a newly seen (or returning) camera."""
        replaced = None
        evicted = None
        with self._writing():
            if not self._initialized:
                return
            existing = self._workers.get(camera.device_id)
            if existing is not None and existing.camera.device_path == camera.device_path:
                return
            if existing is None and len(self._workers) >= self._settings.max_cameras:
                evicted = self._evict_promoted(camera.device_id)
                if evicted is None:
                    if all(p.device_id != camera.device_id for p in self._pending):
                        self._pending.append(camera)
                    self._log.info("Camera %s queued, all %d slots in use",
                                   camera.device_path, self._settings.max_cameras)
                    return
            self._promoted.pop(camera.device_id, None)
            self._pending = [p for p in self._pending if p.device_id != camera.device_id]

            sink = (self._sinks.get(camera.device_id)
                    or self._retired_sinks.pop(camera.device_id, None))
            reconnect = sink is not None
            if sink is None:
                sink = self._new_sink()
            worker = self._worker_factory(camera, sink)
            worker.set_fps(self._fps)
            worker.set_emergency_skip(self._emergency_skip)

            replaced = self._workers.get(camera.device_id)
            self._workers[camera.device_id] = worker
            self._sinks[camera.device_id] = sink
            self._cameras = [c for c in self._cameras if c.device_id != camera.device_id]
            self._cameras.append(camera)
            started = self._started

        if evicted is not None:
            self._log.info("Camera %s reclaims its slot, %s back in the queue",
                           camera.device_id, evicted.camera.device_path)
            self._stop_worker(evicted)
        if replaced is not None:
            self._stop_worker(replaced)
        self._log.info("%s camera %s at %s",
                       "Reconnected" if reconnect else "Attached",
                       camera.device_id, camera.device_path)
        if started:
            try:
                worker.start()
            except CameraStartError as e:
                self._log.warning("Camera %s attach failed: %s", camera.device_path, e)

    def _evict_promoted(self, device_id: str) -> Optional[CaptureWorker]:
        """
        Undo the promotion a detach of ``device_id`` made, if it is returning.

        A USB parent that comes back while its sink is retained is a
        reconnect, so the queued camera that took over its slot goes back
        to the head of the queue. Caller holds the write lock.
        """
        newcomer_id = self._promoted.pop(device_id, None)
        if newcomer_id is None or device_id not in self._retired_sinks:
            return None
        worker = self._workers.pop(newcomer_id, None)
        if worker is None:
            return None
        self._cameras = [c for c in self._cameras if c.device_id != newcomer_id]
        sink = self._sinks.pop(newcomer_id, None)
        if sink is not None:
            self._retired_sinks[newcomer_id] = sink
        self._pending.insert(0, worker.camera)
        return worker

    def handle_detached(self, camera: Camera) -> None:
        """Tear down the worker of a camera that disappeared."""
        promote = None
        with self._writing():
            self._pending = [p for p in self._pending if p.device_id != camera.device_id]
            worker = self._workers.get(camera.device_id)
            if worker is None or worker.camera.device_path != camera.device_path:
                return
            del self._workers[camera.device_id]
            self._cameras = [c for c in self._cameras if c.device_id != camera.device_id]
            self._promoted = {k: v for k, v in self._promoted.items() if v != camera.device_id}
            sink = self._sinks.pop(camera.device_id, None)
            if sink is not None:
                self._retired_sinks[camera.device_id] = sink
            if self._pending:
                promote = self._pending.pop(0)
                self._promoted[camera.device_id] = promote.device_id

        self._log.info("Camera %s (%s) detached, stopping worker", camera.device_path, camera.device_id)
        self._stop_worker(worker)
        if promote is not None:
            self.handle_attached(promote)

    # ------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------
    def get_settings(self) -> Settings:
        return self._settings

    def is_buffer_mode(self) -> bool:
        return self._use_buffers

    def is_running(self) -> bool:
        return self._started

    def get_cameras(self) -> list[Camera]:
        with self._reading():
            return list(self._cameras)

    def get_frame_buffer(self, camera_id: str):
        """The camera's frame sink, or None if the camera is not tracked."""
        with self._reading():
            return self._sinks.get(camera_id)

    def get_worker(self, camera_id: str) -> Optional[CaptureWorker]:
        with self._reading():
            return self._workers.get(camera_id)

    def set_fps(self, fps: int) -> None:
        """Broadcast a new target FPS to every worker."""
        with self._writing():
            self._fps = fps
            workers = list(self._workers.values())
        for worker in workers:
            worker.set_fps(fps)

    def set_emergency_skip(self, enabled: bool) -> None:
        with self._writing():
            self._emergency_skip = enabled
            workers = list(self._workers.values())
        for worker in workers:
            worker.set_emergency_skip(enabled)
        self._log.info("Emergency frame skipping %s", "on" if enabled else "off")

    def stale_ratio(self, timeout_sec: float) -> float:
        """Share of running workers whose sink has not advanced within timeout_sec."""
        with self._reading():
            pairs = [(w, self._sinks.get(i)) for i, w in self._workers.items()]
        now = time.time()
        running = 0
        stale = 0
        for worker, sink in pairs:
            if sink is None or not worker.is_online():
                continue
            running += 1
            if now - sink.get_last_frame_time() > timeout_sec:
                stale += 1
        return stale / running if running else 0.0

    def fps_stats(self) -> dict[str, str]:
        """Observed capture FPS per camera, formatted for logging."""
        stats = {}
        with self._reading():
            items = [(c.device_path, self._sinks.get(c.device_id)) for c in self._cameras]
        for path, sink in items:
            if sink is None:
                continue
            fps, total, _ = sink.get_capture_stats()
            stats[path] = f"{fps:.1f} ({total} frames, {sink.get_dropped_count()} dropped)"
        return stats
