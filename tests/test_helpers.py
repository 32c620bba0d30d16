"""
Tests for utils/helpers.py utility functions.
"""

import os
import signal
import time
from unittest import mock

import pytest

from core.camera import Camera
from utils import helpers


class TestRunCmd:
    """run_cmd."""

    def test_run_cmd_success(self):
        """stdout comes back stripped."""
        stdout, stderr, code = helpers.run_cmd(["echo", "hello"])
        assert code == 0
        assert stdout == "hello"
        assert stderr == ""

    def test_run_cmd_failure(self):
        """Non-zero exit status is passed through."""
        _, _, code = helpers.run_cmd(["false"])
        assert code == 1

    def test_run_cmd_timeout(self):
        """A command that outlives the timeout counts as failed."""
        stdout, _, code = helpers.run_cmd(["sleep", "10"], timeout=0.5)
        assert code == 1
        assert stdout == ""

    def test_run_cmd_missing_binary(self):
        """A binary that is not installed reads as a failed command."""
        assert helpers.run_cmd(["nonexistent_command_xyz"]) == ("", "", 1)

    def test_run_cmd_no_shell(self):
        """Arguments reach the program verbatim."""
        stdout, _, code = helpers.run_cmd(["echo", "$HOME;", "x"])
        assert code == 0
        assert stdout == "$HOME; x"


class TestGetPidsFromLsof:
    """get_pids_from_lsof."""

    def test_get_pids_empty_when_no_device(self):
        """A node that does not exist has no holders."""
        pids = helpers.get_pids_from_lsof("/dev/nonexistent_device_xyz")
        assert pids == set()

    @mock.patch("utils.helpers.run_cmd")
    def test_get_pids_parses_output(self, mock_run):
        """lsof -t prints one pid per line."""
        mock_run.return_value = ("1234\n5678", "", 0)
        pids = helpers.get_pids_from_lsof("/dev/video0")
        assert pids == {1234, 5678}
        mock_run.assert_called_once_with(["lsof", "-t", "/dev/video0"])

    @mock.patch("utils.helpers.run_cmd")
    def test_get_pids_handles_non_numeric(self, mock_run):
        """Stray tokens in lsof output are skipped."""
        mock_run.return_value = ("1234\nabc\n5678", "", 0)
        pids = helpers.get_pids_from_lsof("/dev/video0")
        assert pids == {1234, 5678}

    @mock.patch("utils.helpers.run_cmd")
    def test_get_pids_returns_empty_on_failure(self, mock_run):
        """A failed lookup yields no pids."""
        mock_run.return_value = ("", "error", 1)
        pids = helpers.get_pids_from_lsof("/dev/video0")
        assert pids == set()


class TestGetPidsFromFuser:
    """get_pids_from_fuser."""

    @mock.patch("utils.helpers.run_cmd")
    def test_get_pids_parses_fuser_output(self, mock_run):
        """fuser prints pids with access suffixes and the device on stderr."""
        mock_run.return_value = ("  1234m  5678", "/dev/video0:", 0)
        pids = helpers.get_pids_from_fuser("/dev/video0")
        assert pids == {1234, 5678}

    @mock.patch("utils.helpers.run_cmd")
    def test_get_pids_returns_empty_on_failure(self, mock_run):
        """A failed lookup yields no pids."""
        mock_run.return_value = ("", "", 1)
        pids = helpers.get_pids_from_fuser("/dev/video0")
        assert pids == set()


class TestFindDeviceHolders:
    """find_device_holders."""

    @mock.patch("utils.helpers.get_pids_from_fuser")
    @mock.patch("utils.helpers.get_pids_from_lsof", return_value={11, 12})
    def test_lsof_wins(self, mock_lsof, mock_fuser):
        assert helpers.find_device_holders("/dev/video0") == {11, 12}
        mock_fuser.assert_not_called()

    @mock.patch("utils.helpers.get_pids_from_fuser", return_value={21})
    @mock.patch("utils.helpers.get_pids_from_lsof", return_value=set())
    def test_fuser_fallback(self, mock_lsof, mock_fuser):
        assert helpers.find_device_holders("/dev/video0") == {21}

    @mock.patch("utils.helpers.get_pids_from_lsof")
    def test_excludes_own_pid(self, mock_lsof):
        mock_lsof.return_value = {os.getpid(), 31}
        assert helpers.find_device_holders("/dev/video0") == {31}


class TestIsPidAlive:
    """is_pid_alive."""

    def test_current_process_is_alive(self):
        """Our own pid is alive."""
        assert helpers.is_pid_alive(os.getpid()) is True

    def test_nonexistent_pid_not_alive(self):
        """An unused pid reads as dead."""
        # Above any real pid_max
        assert helpers.is_pid_alive(999999999) is False


class TestKillDeviceHolders:
    """kill_device_holders."""

    @mock.patch("utils.helpers.get_pids_from_lsof")
    def test_disabled(self, mock_lsof):
        """Test function does nothing when disabled."""
        result = helpers.kill_device_holders("/dev/video0", enabled=False)
        assert result is False
        mock_lsof.assert_not_called()

    @mock.patch("utils.helpers.get_pids_from_lsof")
    @mock.patch("utils.helpers.get_pids_from_fuser")
    def test_returns_false_when_no_holders(self, mock_fuser, mock_lsof):
        """Nothing holding the node means nothing to kill."""
        mock_lsof.return_value = set()
        mock_fuser.return_value = set()
        result = helpers.kill_device_holders("/dev/video0")
        assert result is False
        mock_fuser.assert_called_once_with("/dev/video0")

    @mock.patch("utils.helpers.get_pids_from_lsof")
    @mock.patch("utils.helpers.get_pids_from_fuser")
    @mock.patch("os.kill")
    def test_never_kills_itself(self, mock_kill, mock_fuser, mock_lsof):
        """Our own PID holding the device is not a stale holder."""
        mock_lsof.return_value = {os.getpid()}
        assert helpers.kill_device_holders("/dev/video0") is False
        mock_kill.assert_not_called()

    @mock.patch("utils.helpers.is_pid_alive")
    @mock.patch("utils.helpers.get_pids_from_lsof")
    @mock.patch("utils.helpers.get_pids_from_fuser")
    @mock.patch("os.kill")
    @mock.patch("time.sleep")
    def test_kills_processes_with_sigterm(
        self, mock_sleep, mock_kill, mock_fuser, mock_lsof, mock_alive
    ):
        """Holders get SIGTERM first."""
        fake_pid = 12345
        mock_lsof.return_value = {fake_pid}
        mock_fuser.return_value = set()
        mock_alive.return_value = False

        result = helpers.kill_device_holders("/dev/video0", grace=0.1)

        assert result is True
        mock_kill.assert_called_once_with(fake_pid, signal.SIGTERM)

    @mock.patch("utils.helpers.is_pid_alive", return_value=True)
    @mock.patch("utils.helpers.get_pids_from_lsof", return_value={12345})
    @mock.patch("os.kill")
    @mock.patch("time.sleep")
    def test_escalates_to_sigkill(self, mock_sleep, mock_kill, mock_lsof, mock_alive):
        """Holders that survive the grace period get SIGKILL."""
        assert helpers.kill_device_holders("/dev/video0", grace=0.1) is True
        mock_kill.assert_any_call(12345, signal.SIGTERM)
        mock_kill.assert_any_call(12345, signal.SIGKILL)

    @mock.patch("utils.helpers.run_cmd")
    @mock.patch("utils.helpers.get_pids_from_lsof", return_value={12345})
    @mock.patch("utils.helpers.is_pid_alive", return_value=False)
    @mock.patch("os.kill", side_effect=PermissionError)
    @mock.patch("time.sleep")
    def test_permission_error_uses_sudo_fuser(self, mock_sleep, mock_kill, mock_alive, mock_lsof, mock_run):
        """Holders owned by another user are killed through sudo fuser."""
        assert helpers.kill_device_holders("/dev/video0") is True
        mock_run.assert_called_once_with(["sudo", "-n", "fuser", "-k", "/dev/video0"])


class TestSystemdNotify:
    """systemd_notify."""

    @pytest.fixture
    def mock_sock(self):
        with mock.patch("socket.socket") as mock_socket_class:
            sock = mock.MagicMock()
            sock.__enter__.return_value = sock
            mock_socket_class.return_value = sock
            yield sock

    @mock.patch.dict(os.environ, {}, clear=True)
    def test_no_op_without_notify_socket(self, mock_sock):
        """Outside systemd there is no socket to talk to."""
        helpers.systemd_notify("READY=1")
        mock_sock.connect.assert_not_called()

    @mock.patch.dict(os.environ, {"NOTIFY_SOCKET": "/run/systemd/notify"})
    def test_sends_message_to_socket(self, mock_sock):
        """The message is sent as one datagram."""
        helpers.systemd_notify("READY=1")

        mock_sock.connect.assert_called_once_with("/run/systemd/notify")
        mock_sock.sendall.assert_called_once_with(b"READY=1")
        mock_sock.__exit__.assert_called_once()

    @mock.patch.dict(os.environ, {"NOTIFY_SOCKET": "@/run/systemd/notify"})
    def test_handles_abstract_socket(self, mock_sock):
        """An @ address names an abstract socket."""
        helpers.systemd_notify("WATCHDOG=1")

        # leading NUL
        mock_sock.connect.assert_called_once_with("\0/run/systemd/notify")

    @mock.patch.dict(os.environ, {"NOTIFY_SOCKET": "/run/systemd/notify"})
    def test_socket_errors_are_swallowed(self, mock_sock):
        mock_sock.connect.side_effect = ConnectionRefusedError
        helpers.systemd_notify("READY=1")


class TestWriteWatchdogHeartbeat:
    """write_watchdog_heartbeat."""

    @mock.patch("utils.helpers.systemd_notify")
    @mock.patch.dict(os.environ, {}, clear=True)
    def test_no_op_without_watchdog_usec(self, mock_notify):
        """No watchdog configured, nothing sent."""
        helpers.write_watchdog_heartbeat()
        mock_notify.assert_not_called()

    @mock.patch("utils.helpers.systemd_notify")
    @mock.patch.dict(os.environ, {"WATCHDOG_USEC": "5000000"})
    def test_sends_watchdog_message(self, mock_notify):
        """WATCHDOG_USEC set means the unit expects pings."""
        helpers.write_watchdog_heartbeat()
        mock_notify.assert_called_once_with("WATCHDOG=1")


def health_manager(entries):
    """A CameraManager stand-in: entries are (camera, worker, last_frame_time)."""
    manager = mock.MagicMock()
    manager.get_cameras.return_value = [cam for cam, _, _ in entries]
    workers = {cam.device_id: worker for cam, worker, _ in entries}
    sinks = {}
    for cam, _, last in entries:
        sink = mock.MagicMock()
        sink.get_last_frame_time.return_value = last
        sinks[cam.device_id] = sink
    manager.get_worker.side_effect = workers.get
    manager.get_frame_buffer.side_effect = sinks.get
    return manager


def healthy_worker(healthy=True, limited=False):
    worker = mock.MagicMock()
    worker.is_healthy.return_value = healthy
    worker.is_restart_limited.return_value = limited
    return worker


class TestLogHealthSummary:
    """log_health_summary."""

    @mock.patch("utils.helpers.write_watchdog_heartbeat")
    @mock.patch("logging.info")
    @mock.patch("logging.warning")
    def test_logs_health_summary(self, mock_warning, mock_log, mock_watchdog):
        """One summary line per call."""
        now = time.time()
        manager = health_manager([
            (Camera("usb-1", "/dev/video0"), healthy_worker(), now),
            (Camera("usb-2", "/dev/video2"), healthy_worker(), 0.0),
            (Camera("usb-3", "/dev/video4"), healthy_worker(limited=True), now),
        ])

        helpers.log_health_summary(manager)

        mock_log.assert_called_once()
        call_args = mock_log.call_args
        assert "Health" in call_args[0][0]
        assert call_args[0][1] == 2  # online count (cameras with fresh frames)
        assert call_args[0][3] == 1  # no signal
        assert call_args[0][5] == 3  # cameras
        assert call_args[0][6] == 1  # restart limited
        mock_watchdog.assert_called_once()

    @mock.patch("utils.helpers.write_watchdog_heartbeat")
    @mock.patch("logging.info")
    @mock.patch("logging.warning")
    def test_detects_stale_frames(self, mock_warning, mock_log, mock_watchdog):
        """Old last-frame timestamps are reported as stale."""
        manager = health_manager([
            (Camera("usb-1", "/dev/video0"), healthy_worker(), time.time() - 15.0),
        ])

        helpers.log_health_summary(manager)


        mock_warning.assert_called()
        warning_call = mock_warning.call_args[0][0]
        assert "stale" in warning_call.lower()
        assert mock_log.call_args[0][2] == 1

    @mock.patch("utils.helpers.write_watchdog_heartbeat")
    @mock.patch("logging.info")
    @mock.patch("logging.warning")
    def test_detects_unhealthy_worker(self, mock_warning, mock_log, mock_watchdog):
        """Dead or stalled workers are reported."""
        manager = health_manager([
            (Camera("usb-1", "/dev/video0"), healthy_worker(healthy=False), time.time()),
        ])

        helpers.log_health_summary(manager)


        mock_warning.assert_called()
        warning_call = mock_warning.call_args[0][0]
        assert "unhealthy" in warning_call.lower()
        assert mock_log.call_args[0][4] == 1

    @mock.patch("utils.helpers.write_watchdog_heartbeat")
    @mock.patch("logging.info")
    def test_no_cameras(self, mock_log, mock_watchdog):
        helpers.log_health_summary(health_manager([]))
        assert mock_log.call_args[0][1:] == (0, 0, 0, 0, 0, 0)
        mock_watchdog.assert_called_once()
