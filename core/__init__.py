"""Core modules for camera capture, discovery, configuration, and adaptive FPS."""

__all__ = [
    # config module exports
    "Config",
    "load_config",
    "apply_config",
    "configure_logging",
    "choose_profile",
    "config_path",
    "dprint",
    "CONFIG_PATH",
    "CAMERA_SLOT_COUNT",
    "DYNAMIC_FPS_ENABLED",
    "PERF_CHECK_INTERVAL_MS",
    "MIN_DYNAMIC_FPS",
    "STRESS_HOLD_COUNT",
    "RECOVER_HOLD_COUNT",
    "RESCAN_INTERVAL_MS",
    "FAILED_CAMERA_COOLDOWN_SEC",
    "HEALTH_LOG_INTERVAL_SEC",
    # camera module exports
    "Camera",
    "Settings",
    "RecoveryPolicy",
    "WorkerState",
    "CaptureWorker",
    "default_settings",
    # frame sinks
    "FrameBuffer",
    "FrameQueue",
    # discovery module exports
    "DeviceScanner",
    "discover_cameras",
    "get_video_indexes",
    "test_single_camera",
    # manager
    "CameraManager",
    # adaptive FPS
    "AdaptiveController",
    "ControlState",
    # performance module exports
    "PerformanceMonitor",
    "normalize_load_average",
    "is_system_stressed",
    "read_cpu_load_ratio",
    "read_cpu_temp_c",
    # errors
    "CameraError",
    "CameraNotFoundError",
    "CameraStartError",
    "ManagerNotInitializedError",
    "RestartLimitError",
]

from .config import (
    Config,
    load_config,
    apply_config,
    configure_logging,
    choose_profile,
    config_path,
    dprint,
    CONFIG_PATH,
    CAMERA_SLOT_COUNT,
    DYNAMIC_FPS_ENABLED,
    PERF_CHECK_INTERVAL_MS,
    MIN_DYNAMIC_FPS,
    STRESS_HOLD_COUNT,
    RECOVER_HOLD_COUNT,
    RESCAN_INTERVAL_MS,
    FAILED_CAMERA_COOLDOWN_SEC,
    HEALTH_LOG_INTERVAL_SEC,
)
from .camera import Camera, CaptureWorker, RecoveryPolicy, Settings, WorkerState, default_settings
from .framebuffer import FrameBuffer, FrameQueue
from .discovery import DeviceScanner, discover_cameras, get_video_indexes, test_single_camera
from .manager import CameraManager
from .adaptive import AdaptiveController, ControlState
from .performance import (
    PerformanceMonitor,
    normalize_load_average,
    is_system_stressed,
    read_cpu_load_ratio,
    read_cpu_temp_c,
)
from .errors import (
    CameraError,
    CameraNotFoundError,
    CameraStartError,
    ManagerNotInitializedError,
    RestartLimitError,
)
