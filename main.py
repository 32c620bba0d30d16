# ============================================================
# TABLE OF CONTENTS
# ------------------------------------------------------------
# 1. CONFIG + LOGGING
# 2. CAMERA MANAGER
# 3. CAMERA RESCAN (HOT-PLUG SUPPORT)
# 4. DYNAMIC PERFORMANCE TUNING
# 5. PERIODIC LOGGING + HEALTH
# 6. MAIN ENTRYPOINT
# ============================================================

# ------------------------------------------------------------
# Standard library imports
# ------------------------------------------------------------
import atexit
import logging
import signal
import sys
from functools import partial

# ------------------------------------------------------------
# Third-party imports
# ------------------------------------------------------------
from PyQt6.QtCore import QCoreApplication, QTimer

# ------------------------------------------------------------
# Local imports
# ------------------------------------------------------------
from core.adaptive import AdaptiveController
from core.config import apply_config, configure_logging, load_config
from core.discovery import DeviceScanner, discover_cameras, test_single_camera
from core.errors import CameraError
from core.manager import CameraManager
from utils.helpers import log_health_summary, systemd_notify

FPS_LOG_INTERVAL_MS = 2000


class Runtime:
    """Everything main() starts, so shutdown can stop it in reverse order."""

    def __init__(self, cfg):
        self.cfg = cfg
        self.manager = CameraManager(
            cfg.camera_settings(),
            use_buffers=cfg.use_buffers,
            policy=cfg.recovery_policy(),
            discover=partial(discover_cameras, kill_enabled=cfg.kill_device_holders),
            start_stagger_sec=cfg.start_stagger_ms / 1000.0,
        )
        self.scanner = DeviceScanner(
            interval_ms=cfg.rescan_interval_ms,
            probe=partial(test_single_camera, retries=2, retry_delay=0.15, allow_kill=False),
            failed_cooldown_sec=cfg.failed_camera_cooldown_sec,
        )
        self.controller = AdaptiveController(self.manager, cfg)
        self._stopped = False

    def start(self):
        self.manager.initialize()
        try:
            self.manager.start()
        except CameraError:
            logging.exception("Camera startup incomplete, continuing with the cameras that started")

        # Hot-plug events go straight to the manager, which is thread-safe
        self.scanner.track(self.manager.get_cameras())
        self.scanner.camera_attached.connect(self.manager.handle_attached)
        self.scanner.camera_detached.connect(self.manager.handle_detached)
        self.scanner.start()
        self.controller.start()

    def shutdown(self):
        if self._stopped:
            return
        self._stopped = True
        logging.info("Cleaning all cameras")
        systemd_notify("STOPPING=1")
        self.controller.stop()
        self.scanner.stop()
        self.manager.stop()

    def log_all_fps(self):
        stats = self.manager.fps_stats()
        if stats:
            logging.info("FPS: %s", stats)

    def log_health(self):
        log_health_summary(self.manager, stale_threshold_sec=max(10.0, self.cfg.stale_frame_timeout_sec))


def main():
    """Load config, start capture, hot-plug and adaptive FPS, run until signalled."""
    parser = load_config()
    cfg = apply_config(parser)
    configure_logging(cfg)
    logging.info("Starting camera capture service")

    ok, warnings = cfg.validate()
    for w in warnings:
        logging.warning("Config: %s", w)
    if not ok:
        logging.warning("Config exceeds the USB bandwidth budget, expect dropped frames")

    app = QCoreApplication(sys.argv)
    runtime = Runtime(cfg)

    def on_signal(sig, frame):
        logging.info("Signal %d received, shutting down", sig)
        runtime.shutdown()
        app.quit()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)
    atexit.register(runtime.shutdown)
    app.aboutToQuit.connect(runtime.shutdown)

    # Allow Python to handle SIGINT properly in Qt event loop
    sigint_timer = QTimer()
    sigint_timer.timeout.connect(lambda: None)
    sigint_timer.start(500)

    runtime.start()

    # Batch FPS logging - single timer for all cameras
    fps_log_timer = QTimer()
    fps_log_timer.setInterval(FPS_LOG_INTERVAL_MS)
    fps_log_timer.timeout.connect(runtime.log_all_fps)
    fps_log_timer.start()

    health_timer = QTimer()
    health_timer.setInterval(int(cfg.health_log_interval_sec * 1000))
    health_timer.timeout.connect(runtime.log_health)
    health_timer.start()

    logging.info(
        "Running with %d camera(s) at %dx%d@%d (%s), adaptive FPS %s",
        len(runtime.manager.get_cameras()),
        cfg.capture_width,
        cfg.capture_height,
        cfg.capture_fps,
        cfg.capture_format,
        "on" if runtime.controller.is_dynamic() else "off",
    )
    systemd_notify("READY=1")
    sys.exit(app.exec())


if __name__ == "__main__":
    main()
