"""
Host-side helpers for the capture service.

Freeing a /dev/video node from a stale holder, systemd readiness and
watchdog notifications, and the periodic per-camera health line.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import socket
import subprocess
import time
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from core.manager import CameraManager


def run_cmd(argv: Sequence[str], timeout: float = 2) -> tuple[str, str, int]:
    """Run a command (no shell). Returns (stdout, stderr, returncode); 1 if it could not run."""
    try:
        result = subprocess.run(list(argv), capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.SubprocessError):
        return "", "", 1
    return result.stdout.strip(), result.stderr.strip(), result.returncode


def get_pids_from_lsof(device_path: str) -> set[int]:
    """PIDs with the device open, according to lsof."""
    out, _, code = run_cmd(["lsof", "-t", device_path])
    if code != 0:
        return set()
    return {int(tok) for tok in out.split() if tok.isdigit()}


def get_pids_from_fuser(device_path: str) -> set[int]:
    """PIDs with the device open, according to fuser (prints them with access suffixes)."""
    out, err, code = run_cmd(["fuser", device_path])
    if code != 0:
        return set()
    # fuser writes the device name to stderr and the pids to stdout
    text = f"{out} {err}".replace(device_path, " ")
    return {int(m) for m in re.findall(r"\b(\d+)[a-zA-Z]*\b", text)}


def is_pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def find_device_holders(device_path: str) -> set[int]:
    """Other processes holding the device; lsof first, fuser as the fallback."""
    pids = get_pids_from_lsof(device_path) or get_pids_from_fuser(device_path)
    pids.discard(os.getpid())
    return pids


def _signal_holders(pids: set[int], sig: int, device_path: str) -> None:
    for pid in sorted(pids):
        try:
            os.kill(pid, sig)
        except PermissionError:
            # Held by another user; let fuser do it with elevated rights once
            run_cmd(["sudo", "-n", "fuser", "-k", device_path])
            return
        except OSError:
            logging.debug("Could not send %s to pid %d", signal.Signals(sig).name, pid, exc_info=True)


def kill_device_holders(device_path: str, enabled: bool = True, grace: float = 0.4) -> bool:
    """
    Terminate whatever else has a camera node open.

    SIGTERM first, SIGKILL for holders still alive after ``grace``.
    Best effort: returns True if any holder was signalled, never raises.
    """
    if not enabled:
        return False

    pids = find_device_holders(device_path)
    if not pids:
        return False

    logging.info("Killing holders of %s: %s", device_path, sorted(pids))
    _signal_holders(pids, signal.SIGTERM, device_path)
    time.sleep(grace)

    survivors = {pid for pid in pids if is_pid_alive(pid)}
    if survivors:
        logging.warning("Holders of %s ignored SIGTERM: %s", device_path, sorted(survivors))
        _signal_holders(survivors, signal.SIGKILL, device_path)
    return True


def systemd_notify(message: str) -> None:
    """Send a sd_notify datagram; silently does nothing outside systemd."""
    sock_path = os.environ.get("NOTIFY_SOCKET")
    if not sock_path:
        return
    if sock_path.startswith("@"):
        sock_path = "\0" + sock_path[1:]
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
            sock.connect(sock_path)
            sock.sendall(message.encode("utf-8"))
    except OSError:
        logging.debug("systemd notify %r failed", message, exc_info=True)


def write_watchdog_heartbeat() -> None:
    """Pet the systemd watchdog if the unit has one configured."""
    if os.getenv("WATCHDOG_USEC") is None:
        return
    systemd_notify("WATCHDOG=1")


def log_health_summary(manager: CameraManager, stale_threshold_sec: float = 10.0) -> None:
    """Log one health line for every camera the manager tracks, then feed the watchdog.

    A camera counts as online when its buffer advanced within
    ``stale_threshold_sec``, stale when it has frames but none recently,
    and no_signal when it never produced one.
    """
    now = time.time()
    online = stale = no_signal = unhealthy = limited = 0

    cameras = manager.get_cameras()
    for cam in cameras:
        worker = manager.get_worker(cam.device_id)
        if worker is not None:
            if not worker.is_healthy():
                unhealthy += 1
                logging.warning("Camera %s worker unhealthy (thread dead or stalled)", cam.device_path)
            if worker.is_restart_limited():
                limited += 1

        sink = manager.get_frame_buffer(cam.device_id)
        last_ts = sink.get_last_frame_time() if sink is not None else 0.0
        age = now - last_ts
        if last_ts <= 0:
            no_signal += 1
        elif age > stale_threshold_sec:
            stale += 1
            logging.warning("Camera %s has stale frame (%.1fs old)", cam.device_path, age)
        else:
            online += 1

    logging.info(
        "Health cameras online=%d stale=%d no_signal=%d unhealthy_workers=%d/%d restart_limited=%d",
        online, stale, no_signal, unhealthy, len(cameras), limited,
    )
    write_watchdog_heartbeat()
