"""
ffmpeg decode subprocess for one camera.

Owns how a capture format turns into an ffmpeg command line, how the
subprocess is read without blocking forever, and how its stdout bytes are
cut into frames.
"""

from __future__ import annotations

import logging
import os
import select
import subprocess
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

FFMPEG_BINARY = "ffmpeg"
READ_CHUNK_BYTES = 65536

JPEG_SOI = b"\xff\xd8"
JPEG_EOI = b"\xff\xd9"


@dataclass(frozen=True)
class CaptureFormat:
    """One rung of the format ladder."""

    name: str
    input_format: Optional[str]  # v4l2 -input_format value, None lets the driver pick
    passthrough: bool  # True: copy MJPEG out and decode in-process


MJPEG = CaptureFormat("mjpeg", "mjpeg", True)
YUYV = CaptureFormat("yuyv", "yuyv422", False)
AUTO = CaptureFormat("auto", None, False)


def build_format_ladder(preferred: str) -> tuple[CaptureFormat, ...]:
    """Preferred format first, then the other known format, then auto."""
    if (preferred or "").lower() == "yuyv":
        return (YUYV, MJPEG, AUTO)
    return (MJPEG, YUYV, AUTO)


def build_ffmpeg_command(
    device_path: str,
    fmt: CaptureFormat,
    width: int,
    height: int,
    fps: int,
) -> list[str]:
    """Command line that reads the v4l2 device and writes frames to stdout."""
    cmd = [
        FFMPEG_BINARY,
        "-hide_banner",
        "-loglevel", "error",
        "-nostdin",
        "-f", "v4l2",
        "-thread_queue_size", "4",
    ]
    if fmt.input_format:
        cmd += ["-input_format", fmt.input_format]
    cmd += [
        "-video_size", f"{width}x{height}",
        "-framerate", str(fps),
        "-i", device_path,
        "-an",
    ]
    if fmt.passthrough:
        cmd += ["-c:v", "copy", "-f", "mjpeg", "pipe:1"]
    else:
        cmd += [
            "-vf", f"scale={width}:{height}",
            "-pix_fmt", "bgr24",
            "-f", "rawvideo",
            "pipe:1",
        ]
    return cmd


class FFmpegProcess:
    """Handle on one running ffmpeg decode subprocess."""

    def __init__(self, cmd: list[str]):
        self.cmd = cmd
        self._proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            bufsize=0,
            start_new_session=True,
        )
        self._fd = self._proc.stdout.fileno()

    @property
    def pid(self) -> int:
        return self._proc.pid

    def read(self, timeout: float) -> Optional[bytes]:
        """
        Read whatever stdout has.

        Returns None when nothing arrived within ``timeout``, b"" on EOF.
        """
        ready, _, _ = select.select([self._fd], [], [], timeout)
        if not ready:
            return None
        return os.read(self._fd, READ_CHUNK_BYTES)

    def poll(self) -> Optional[int]:
        return self._proc.poll()

    def terminate(self) -> None:
        if self._proc.poll() is None:
            self._proc.terminate()

    def kill(self) -> None:
        if self._proc.poll() is None:
            self._proc.kill()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def close(self) -> None:
        try:
            self._proc.stdout.close()
        except OSError:
            pass


def spawn_ffmpeg(cmd: list[str]) -> FFmpegProcess:
    return FFmpegProcess(cmd)


def stop_process(proc, grace_sec: float = 1.0, logger: Optional[logging.Logger] = None) -> None:
    """Terminate, then kill after ``grace_sec``; always reaps."""
    log = logger or logging.getLogger(__name__)
    try:
        if proc.poll() is None:
            proc.terminate()
            if proc.wait(grace_sec) is None:
                log.warning("Decoder pid %s ignored SIGTERM, killing", getattr(proc, "pid", "?"))
                proc.kill()
                proc.wait(grace_sec)
    except Exception:
        log.warning("Decoder cleanup failed", exc_info=True)
    finally:
        close = getattr(proc, "close", None)
        if close is not None:
            close()


class DecodeError(Exception):
    """Output bytes could not be turned into a frame."""


class MjpegStreamDecoder:
    """Cuts a concatenated JPEG stream into individual encoded frames."""

    def __init__(self, max_buffer_bytes: int = 8 * 1024 * 1024):
        self._buf = bytearray()
        self._max = max_buffer_bytes

    def feed(self, data: bytes) -> list[bytes]:
        self._buf += data
        frames = []
        while True:
            start = self._buf.find(JPEG_SOI)
            if start < 0:
                # Keep a trailing 0xff in case SOI straddles chunks
                del self._buf[:-1]
                break
            end = self._buf.find(JPEG_EOI, start + 2)
            if end < 0:
                if start > 0:
                    del self._buf[:start]
                break
            frames.append(bytes(self._buf[start:end + 2]))
            del self._buf[:end + 2]
        if len(self._buf) > self._max:
            self._buf.clear()
            raise DecodeError("MJPEG stream overflowed without a frame boundary")
        return frames

    def decode(self, payload: bytes) -> np.ndarray:
        image = cv2.imdecode(np.frombuffer(payload, dtype=np.uint8), cv2.IMREAD_COLOR)
        if image is None:
            raise DecodeError("cv2.imdecode rejected frame")
        return image

    def reset(self) -> None:
        self._buf.clear()


class RawFrameDecoder:
    """Cuts fixed-size bgr24 frames out of a rawvideo stream."""

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self.frame_size = width * height * 3
        self._buf = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        self._buf += data
        frames = []
        while len(self._buf) >= self.frame_size:
            frames.append(bytes(self._buf[:self.frame_size]))
            del self._buf[:self.frame_size]
        return frames

    def decode(self, payload: bytes) -> np.ndarray:
        if len(payload) != self.frame_size:
            raise DecodeError(f"raw frame is {len(payload)} bytes, expected {self.frame_size}")
        return np.frombuffer(payload, dtype=np.uint8).reshape((self.height, self.width, 3))

    def reset(self) -> None:
        self._buf.clear()


def make_decoder(fmt: CaptureFormat, width: int, height: int):
    if fmt.passthrough:
        return MjpegStreamDecoder()
    return RawFrameDecoder(width, height)
