"""
Configuration for Camera Dashboard.

Reads config.ini into an immutable Config, clamps every value into a sane
range and sets up logging. Nothing here is global: callers pass the
Config (or pieces of it) into the components they build.
"""

from __future__ import annotations

import configparser
import logging
import os
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Optional

from core.camera import RecoveryPolicy, Settings

DEBUG_PRINTS = False

CONFIG_ENV = "CAMERA_DASHBOARD_CONFIG"
LOG_FILE_ENV = "CAMERA_DASHBOARD_LOG_FILE"
CONFIG_PATH = "./config.ini"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOGGER_NAME = "camera_dashboard"

# USB 2.0 real-world throughput shared by every camera on the bus
USB_BANDWIDTH_BUDGET_BYTES = 35 * 1024 * 1024
MJPEG_BYTES_PER_PIXEL = 0.2
HIGH_RES_PIXELS = 480000
HIGH_FPS_WARNING = 25

# ------------------------------------------------------------
# Defaults
# ------------------------------------------------------------
LOG_LEVEL = "INFO"
LOG_FILE = "./logs/camera_dashboard.log"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 2
LOG_TO_STDOUT = True

DYNAMIC_FPS_ENABLED = True
PERF_CHECK_INTERVAL_MS = 2000
MIN_DYNAMIC_FPS = 10
FPS_STEP = 2
CPU_LOAD_THRESHOLD = 0.75
CPU_TEMP_THRESHOLD_C = 75.0
STRESS_HOLD_COUNT = 3
RECOVER_HOLD_COUNT = 3
REPROBE_INTERVAL_COUNT = 10
STALE_FRAME_TIMEOUT_SEC = 1.5
RESTART_COOLDOWN_SEC = 5.0
MAX_RESTARTS_PER_WINDOW = 3
RESTART_WINDOW_SEC = 30.0

RESCAN_INTERVAL_MS = 15000
FAILED_CAMERA_COOLDOWN_SEC = 30.0
CAMERA_SLOT_COUNT = 3
KILL_DEVICE_HOLDERS = True
START_STAGGER_MS = 500
USE_BUFFERS = True

PROFILE_CAPTURE_WIDTH = 640
PROFILE_CAPTURE_HEIGHT = 480
PROFILE_CAPTURE_FPS = 25
PROFILE_CAPTURE_FORMAT = "mjpeg"
PROFILE_UI_FPS = 20

HEALTH_LOG_INTERVAL_SEC = 30.0

CAPTURE_FORMATS = ("mjpeg", "yuyv")


def dprint(*args, **kwargs):
    """Lightweight debug print wrapper."""
    if DEBUG_PRINTS:
        print(*args, **kwargs)


@dataclass(frozen=True)
class Config:
    log_level: str = LOG_LEVEL
    log_file: str = LOG_FILE
    log_max_bytes: int = LOG_MAX_BYTES
    log_backup_count: int = LOG_BACKUP_COUNT
    log_to_stdout: bool = LOG_TO_STDOUT

    dynamic_fps: bool = DYNAMIC_FPS_ENABLED
    perf_check_interval_ms: int = PERF_CHECK_INTERVAL_MS
    min_dynamic_fps: int = MIN_DYNAMIC_FPS
    fps_step: int = FPS_STEP
    cpu_load_threshold: float = CPU_LOAD_THRESHOLD
    cpu_temp_threshold_c: float = CPU_TEMP_THRESHOLD_C
    stress_hold_count: int = STRESS_HOLD_COUNT
    recover_hold_count: int = RECOVER_HOLD_COUNT
    reprobe_interval_count: int = REPROBE_INTERVAL_COUNT
    stale_frame_timeout_sec: float = STALE_FRAME_TIMEOUT_SEC
    restart_cooldown_sec: float = RESTART_COOLDOWN_SEC
    max_restarts_per_window: int = MAX_RESTARTS_PER_WINDOW
    restart_window_sec: float = RESTART_WINDOW_SEC

    rescan_interval_ms: int = RESCAN_INTERVAL_MS
    failed_camera_cooldown_sec: float = FAILED_CAMERA_COOLDOWN_SEC
    camera_slot_count: int = CAMERA_SLOT_COUNT
    kill_device_holders: bool = KILL_DEVICE_HOLDERS
    start_stagger_ms: int = START_STAGGER_MS
    use_buffers: bool = USE_BUFFERS

    capture_width: int = PROFILE_CAPTURE_WIDTH
    capture_height: int = PROFILE_CAPTURE_HEIGHT
    capture_fps: int = PROFILE_CAPTURE_FPS
    capture_format: str = PROFILE_CAPTURE_FORMAT
    ui_fps: int = PROFILE_UI_FPS

    health_log_interval_sec: float = HEALTH_LOG_INTERVAL_SEC

    def camera_settings(self) -> Settings:
        return Settings(
            width=self.capture_width,
            height=self.capture_height,
            fps=self.capture_fps,
            format=self.capture_format,
            max_cameras=self.camera_slot_count,
        )

    def recovery_policy(self) -> RecoveryPolicy:
        return RecoveryPolicy(
            stale_timeout_sec=self.stale_frame_timeout_sec,
            restart_cooldown_sec=self.restart_cooldown_sec,
            max_restarts_per_window=self.max_restarts_per_window,
            restart_window_sec=self.restart_window_sec,
        )

    def validate(self) -> tuple[bool, list[str]]:
        """Return (ok, warnings). ok is False only for settings that cannot work."""
        ok = True
        warnings = []
        pixels = self.capture_width * self.capture_height
        if pixels > HIGH_RES_PIXELS:
            warnings.append(
                f"High resolution {self.capture_width}x{self.capture_height} "
                "may overload the CPU with several cameras"
            )
        if self.capture_fps > HIGH_FPS_WARNING:
            warnings.append(f"Capture FPS {self.capture_fps} is above {HIGH_FPS_WARNING}")
        bandwidth = pixels * self.capture_fps * self.camera_slot_count * MJPEG_BYTES_PER_PIXEL
        if bandwidth > USB_BANDWIDTH_BUDGET_BYTES:
            ok = False
            warnings.append(
                f"Estimated USB bandwidth {bandwidth / 1e6:.1f} MB/s exceeds "
                f"{USB_BANDWIDTH_BUDGET_BYTES / 1e6:.1f} MB/s"
            )
        if self.min_dynamic_fps > self.capture_fps:
            warnings.append(
                f"min_dynamic_fps {self.min_dynamic_fps} is above capture_fps {self.capture_fps}"
            )
        return ok, warnings


def _as_bool(value, default: bool) -> bool:
    if value is None:
        return default
    v = str(value).strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def _as_int(value, default: int, min_value: Optional[int] = None, max_value: Optional[int] = None) -> int:
    try:
        result = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    if min_value is not None:
        result = max(min_value, result)
    if max_value is not None:
        result = min(max_value, result)
    return result


def _as_float(
    value, default: float, min_value: Optional[float] = None, max_value: Optional[float] = None
) -> float:
    try:
        result = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    if min_value is not None:
        result = max(min_value, result)
    if max_value is not None:
        result = min(max_value, result)
    return result


def config_path() -> str:
    return os.environ.get(CONFIG_ENV) or CONFIG_PATH


def load_config(path: Optional[str] = None) -> configparser.ConfigParser:
    """Read the INI file. A missing file yields an empty parser (all defaults)."""
    parser = configparser.ConfigParser()
    path = path or config_path()
    if os.path.exists(path):
        try:
            parser.read(path)
        except configparser.Error:
            logging.getLogger(LOGGER_NAME).warning("Could not parse %s, using defaults", path, exc_info=True)
            return configparser.ConfigParser()
    return parser


def apply_config(parser: configparser.ConfigParser) -> Config:
    """Build a Config from parsed INI data, clamping every value."""

    def get(section, key):
        if parser.has_option(section, key):
            return parser.get(section, key)
        return None

    log_file = os.environ.get(LOG_FILE_ENV) or (get("logging", "file") or "").strip() or LOG_FILE
    fmt = (get("profile", "capture_format") or PROFILE_CAPTURE_FORMAT).strip().lower()
    if fmt not in CAPTURE_FORMATS:
        fmt = PROFILE_CAPTURE_FORMAT

    return Config(
        log_level=(get("logging", "level") or LOG_LEVEL).strip().upper(),
        log_file=log_file,
        log_max_bytes=_as_int(get("logging", "max_bytes"), LOG_MAX_BYTES, min_value=0),
        log_backup_count=_as_int(get("logging", "backup_count"), LOG_BACKUP_COUNT, 0, 50),
        log_to_stdout=_as_bool(get("logging", "stdout"), LOG_TO_STDOUT),
        dynamic_fps=_as_bool(get("performance", "dynamic_fps"), DYNAMIC_FPS_ENABLED),
        perf_check_interval_ms=_as_int(
            get("performance", "perf_check_interval_ms"), PERF_CHECK_INTERVAL_MS, 500, 60000
        ),
        min_dynamic_fps=_as_int(get("performance", "min_dynamic_fps"), MIN_DYNAMIC_FPS, 1, 60),
        fps_step=_as_int(get("performance", "fps_step"), FPS_STEP, 1, 10),
        cpu_load_threshold=_as_float(
            get("performance", "cpu_load_threshold"), CPU_LOAD_THRESHOLD, 0.1, 1.0
        ),
        cpu_temp_threshold_c=_as_float(
            get("performance", "cpu_temp_threshold_c"), CPU_TEMP_THRESHOLD_C, 40.0, 100.0
        ),
        stress_hold_count=_as_int(get("performance", "stress_hold_count"), STRESS_HOLD_COUNT, 1, 20),
        recover_hold_count=_as_int(get("performance", "recover_hold_count"), RECOVER_HOLD_COUNT, 1, 20),
        reprobe_interval_count=_as_int(
            get("performance", "reprobe_interval_count"), REPROBE_INTERVAL_COUNT, 1, 1000
        ),
        stale_frame_timeout_sec=_as_float(
            get("performance", "stale_frame_timeout_sec"), STALE_FRAME_TIMEOUT_SEC, 0.2, 60.0
        ),
        restart_cooldown_sec=_as_float(
            get("performance", "restart_cooldown_sec"), RESTART_COOLDOWN_SEC, 0.1, 300.0
        ),
        max_restarts_per_window=_as_int(
            get("performance", "max_restarts_per_window"), MAX_RESTARTS_PER_WINDOW, 1, 100
        ),
        restart_window_sec=_as_float(
            get("performance", "restart_window_sec"), RESTART_WINDOW_SEC, 1.0, 3600.0
        ),
        rescan_interval_ms=_as_int(get("camera", "rescan_interval_ms"), RESCAN_INTERVAL_MS, 500, 600000),
        failed_camera_cooldown_sec=_as_float(
            get("camera", "failed_camera_cooldown_sec"), FAILED_CAMERA_COOLDOWN_SEC, 0.0, 3600.0
        ),
        camera_slot_count=_as_int(get("camera", "slot_count"), CAMERA_SLOT_COUNT, 1, 8),
        kill_device_holders=_as_bool(get("camera", "kill_device_holders"), KILL_DEVICE_HOLDERS),
        start_stagger_ms=_as_int(get("camera", "start_stagger_ms"), START_STAGGER_MS, 0, 10000),
        use_buffers=_as_bool(get("camera", "use_buffers"), USE_BUFFERS),
        capture_width=_as_int(get("profile", "capture_width"), PROFILE_CAPTURE_WIDTH, 160, 1920),
        capture_height=_as_int(get("profile", "capture_height"), PROFILE_CAPTURE_HEIGHT, 120, 1080),
        capture_fps=_as_int(get("profile", "capture_fps"), PROFILE_CAPTURE_FPS, 1, 60),
        capture_format=fmt,
        ui_fps=_as_int(get("profile", "ui_fps"), PROFILE_UI_FPS, 1, 60),
        health_log_interval_sec=_as_float(
            get("health", "log_interval_sec"), HEALTH_LOG_INTERVAL_SEC, 5.0, 3600.0
        ),
    )


def choose_profile(cfg: Config, camera_count: int) -> tuple[int, int, int, int]:
    """Return (width, height, capture_fps, ui_fps); the adaptive loop does the scaling."""
    return cfg.capture_width, cfg.capture_height, cfg.capture_fps, cfg.ui_fps


def configure_logging(cfg: Config) -> logging.Logger:
    """Attach rotating-file and stdout handlers to the root logger."""
    logger = logging.getLogger()
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(getattr(logging, cfg.log_level, logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    if cfg.log_file:
        try:
            log_dir = os.path.dirname(cfg.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            fh = RotatingFileHandler(
                cfg.log_file, maxBytes=cfg.log_max_bytes, backupCount=cfg.log_backup_count
            )
            fh.setFormatter(formatter)
            logger.addHandler(fh)
        except OSError:
            print(f"WARNING: failed to open log file {cfg.log_file}, logging to stdout", file=sys.stderr)

    if cfg.log_to_stdout or not logger.handlers:
        sh = logging.StreamHandler(sys.stdout)
        sh.setFormatter(formatter)
        logger.addHandler(sh)

    return logger
