"""
Frame hand-off between capture workers and consumers.

FrameBuffer keeps only the latest frame (readers never block each other,
the writer never waits for readers). FrameQueue is the older queue-based
delivery, kept for consumers that want every frame up to a small backlog.
Both implement the FrameSink interface the capture worker writes into.
"""

from __future__ import annotations

import queue
import threading
import time
from typing import Any, Optional, Protocol

from PyQt6.QtCore import QReadLocker, QReadWriteLock, QWriteLocker


class FrameSink(Protocol):
    """What a capture worker needs from wherever its frames go."""

    def write(self, image: Any) -> None: ...

    def mark_dropped(self) -> None: ...

    def reset(self) -> None: ...

    def get_frame_count(self) -> int: ...

    def get_last_frame_time(self) -> float: ...


class FrameBuffer:
    """Single-slot latest-frame store for one camera."""

    def __init__(self):
        self._lock = QReadWriteLock()
        self._image = None
        self._frame_count = 0
        # Reader-facing sequence. Written only under the write lock, read
        # lock-free as a cheap "is there something newer" check. reset()
        # never lowers it, so sequences handed out earlier stay comparable.
        self._seq = 0
        self._dropped_count = 0
        self._dropped_lock = threading.Lock()
        self._last_frame_time = 0.0
        self._start_time = 0.0

    def write(self, image: Any) -> None:
        """Publish a decoded frame, replacing whatever was there."""
        now = time.time()
        locker = QWriteLocker(self._lock)
        try:
            if self._frame_count == 0:
                self._start_time = now
            self._image = image
            self._last_frame_time = now
            self._frame_count += 1
            self._seq += 1
        finally:
            locker.unlock()

    def read(self) -> Optional[Any]:
        """Return the latest frame, or None if nothing was written yet."""
        locker = QReadLocker(self._lock)
        try:
            return self._image
        finally:
            locker.unlock()

    def read_if_new(self, last_seen: int) -> tuple[Optional[Any], int, bool]:
        """
        Return (image, seq, has_new).

        has_new is True only when frames were written after ``last_seen``,
        and then seq is strictly greater than it; otherwise image is None
        and seq is ``last_seen`` unchanged. The sequence survives reset().
        """
        if self._seq <= last_seen:
            return None, last_seen, False
        locker = QReadLocker(self._lock)
        try:
            seq = self._seq
            if seq <= last_seen or self._image is None:
                return None, last_seen, False
            return self._image, seq, True
        finally:
            locker.unlock()

    def mark_dropped(self) -> None:
        with self._dropped_lock:
            self._dropped_count += 1

    def get_frame_count(self) -> int:
        return self._frame_count

    def get_dropped_count(self) -> int:
        return self._dropped_count

    def get_last_frame_time(self) -> float:
        """Wall-clock time of the last write, 0.0 if none."""
        locker = QReadLocker(self._lock)
        try:
            return self._last_frame_time
        finally:
            locker.unlock()

    def get_capture_stats(self) -> tuple[float, int, float]:
        """Return (observed_fps, total_frames, uptime_sec) since the first write."""
        locker = QReadLocker(self._lock)
        try:
            total = self._frame_count
            start = self._start_time
        finally:
            locker.unlock()
        if total == 0 or start <= 0:
            return 0.0, 0, 0.0
        uptime = max(time.time() - start, 1e-6)
        return total / uptime, total, uptime

    def is_stale(self, timeout_sec: float, now: Optional[float] = None) -> bool:
        """True when no frame has arrived within ``timeout_sec``."""
        last = self.get_last_frame_time()
        if last <= 0:
            return True
        now = time.time() if now is None else now
        return (now - last) > timeout_sec

    def reset(self) -> None:
        locker = QWriteLocker(self._lock)
        try:
            self._image = None
            self._frame_count = 0
            self._last_frame_time = 0.0
            self._start_time = 0.0
        finally:
            locker.unlock()
        with self._dropped_lock:
            self._dropped_count = 0


class FrameQueue:
    """Bounded frame queue; when full the oldest frame is discarded."""

    def __init__(self, maxsize: int = 1):
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, maxsize))
        self._lock = threading.Lock()
        self._frame_count = 0
        self._dropped_count = 0
        self._last_frame_time = 0.0
        self._closed = False
        self._start_time = 0.0

    def write(self, image: Any) -> None:
        with self._lock:
            if self._closed:
                return
            while True:
                try:
                    self._queue.put_nowait(image)
                    break
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self._dropped_count += 1
                    except queue.Empty:
                        pass
            now = time.time()
            if self._frame_count == 0:
                self._start_time = now
            self._frame_count += 1
            self._last_frame_time = now

    def get_capture_stats(self) -> tuple[float, int, float]:
        """Return (observed_fps, total_frames, uptime_sec) since the first write."""
        with self._lock:
            total = self._frame_count
            start = self._start_time
        if total == 0 or start <= 0:
            return 0.0, 0, 0.0
        uptime = max(time.time() - start, 1e-6)
        return total / uptime, total, uptime

    def get(self, timeout: Optional[float] = None) -> Optional[Any]:
        """Block for the next frame; None on timeout or once closed and empty."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def read(self) -> Optional[Any]:
        """Non-blocking get."""
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def mark_dropped(self) -> None:
        with self._lock:
            self._dropped_count += 1

    def get_frame_count(self) -> int:
        return self._frame_count

    def get_dropped_count(self) -> int:
        return self._dropped_count

    def get_last_frame_time(self) -> float:
        return self._last_frame_time

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def reset(self) -> None:
        with self._lock:
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
            self._frame_count = 0
            self._dropped_count = 0
            self._last_frame_time = 0.0
            self._closed = False
            self._start_time = 0.0
