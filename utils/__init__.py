"""Host helpers: stale device holders, systemd notify/watchdog, health logging."""

__all__ = [
    "run_cmd",
    "get_pids_from_lsof",
    "get_pids_from_fuser",
    "is_pid_alive",
    "find_device_holders",
    "kill_device_holders",
    "systemd_notify",
    "write_watchdog_heartbeat",
    "log_health_summary",
]

from .helpers import (
    run_cmd,
    get_pids_from_lsof,
    get_pids_from_fuser,
    is_pid_alive,
    find_device_holders,
    kill_device_holders,
    systemd_notify,
    write_watchdog_heartbeat,
    log_health_summary,
)
