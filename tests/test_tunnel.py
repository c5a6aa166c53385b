import os
import threading

import pytest

from conftest import FakeHelper, make_device, make_manager
from mgtweak.errors import TunnelNotEstablished, TunnelStartFailed, TunnelTimedOut
from mgtweak.models import TunnelEndpoint
from mgtweak.tunnel import (TunnelState, build_tunnel_command, elevate, is_error_line,
                            parse_endpoint_line, read_pid, scan_log)

PYTHON = "/usr/bin/python3"


@pytest.fixture
def paths(tmp_path):
    return str(tmp_path / "tunnel.log"), str(tmp_path / "tunnel.pid")


@pytest.fixture
def ios17():
    return make_device(version="17.4", build_version="21E219")


# ─── Log parsing ───

def test_parse_endpoint_line():
    assert parse_endpoint_line("fd7b:e5b:6f53::1 58783") == TunnelEndpoint(address="fd7b:e5b:6f53::1", port=58783)
    assert parse_endpoint_line("  10.0.0.5 49152  ") == TunnelEndpoint(address="10.0.0.5", port=49152)
    assert parse_endpoint_line("10.0.0.5 99999") is None
    assert parse_endpoint_line("10.0.0.5 0") is None
    assert parse_endpoint_line("Interface: utun4") is None
    assert parse_endpoint_line("10.0.0.5") is None


def test_is_error_line():
    assert is_error_line("ERROR: device not found")
    assert is_error_line("Connection Failed")
    assert not is_error_line("Waiting for device")


def test_scan_log_newest_line_wins():
    assert scan_log("") is None
    assert scan_log("starting\nwaiting\n") is None
    assert scan_log("bind failed, retrying\n10.0.0.5 49152\n\n") == (
        TunnelState.ESTABLISHED, TunnelEndpoint(address="10.0.0.5", port=49152))
    assert scan_log("10.0.0.5 49152\nConnection failed\n") == (TunnelState.FAILED, "Connection failed")


def test_read_pid(tmp_path):
    path = tmp_path / "pid"
    assert read_pid(str(path)) is None
    path.write_text("1234\n")
    assert read_pid(str(path)) == 1234
    path.write_text("garbage")
    assert read_pid(str(path)) is None


# ─── Helper command ───

def test_build_tunnel_command_quotes_arguments():
    cmd = build_tunnel_command("/opt/my python/bin/python3", "00008110-ABC", "/tmp/a.log", "/tmp/a.pid")
    assert cmd.startswith("'/opt/my python/bin/python3' -m pymobiledevice3 remote start-tunnel")
    assert "--script-mode --udid 00008110-ABC" in cmd
    assert cmd.endswith("> /tmp/a.log 2>&1 & echo $! > /tmp/a.pid")


def test_elevate():
    darwin = elevate('echo "hi"', system="Darwin")
    assert darwin[0] == "/usr/bin/osascript"
    assert darwin[2] == 'do shell script "echo \\"hi\\"" with administrator privileges'
    assert elevate("echo hi", system="Linux") == ["sudo", "sh", "-c", "echo hi"]


# ─── Session manager ───

def test_old_ios_needs_no_tunnel(paths):
    helper = FakeHelper(*paths)
    manager = make_manager(helper)
    session = manager.start_tunnel(make_device(version="16.5"), PYTHON)
    assert not session.established
    assert helper.argv == []
    assert manager.state == TunnelState.IDLE


def test_endpoint_found_on_fourth_attempt(paths, ios17):
    helper = FakeHelper(*paths, log_text="Starting tunnel...\n")
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 3:
            helper.append("10.0.0.5 1234\n")

    manager = make_manager(helper, sleep=sleep)
    session = manager.start_tunnel(ios17, PYTHON)

    assert manager.attempts_used == 4
    assert sleeps == [0.5, 0.5, 0.5]
    assert manager.state == TunnelState.ESTABLISHED
    assert session.established
    assert session.endpoint == TunnelEndpoint(address="10.0.0.5", port=1234)
    assert session.pid == 4242
    assert session.device_id == ios17.udid
    assert manager.require_endpoint() == session.endpoint


def test_helper_argv_is_elevated(paths, ios17):
    helper = FakeHelper(*paths, log_text="10.0.0.5 1234\n")
    make_manager(helper).start_tunnel(ios17, PYTHON)
    argv = helper.argv[0]
    assert argv[0] in ("sudo", "/usr/bin/osascript")
    assert "start-tunnel --script-mode --udid " + ios17.udid in argv[-1]


def test_timeout_uses_whole_budget(paths, ios17):
    helper = FakeHelper(*paths, log_text="Waiting for device...\n")
    sleeps = []
    manager = make_manager(helper, sleep=sleeps.append)

    with pytest.raises(TunnelTimedOut) as info:
        manager.start_tunnel(ios17, PYTHON)

    assert str(info.value) == "Tunnel setup timeout - could not read tunnel address"
    assert manager.attempts_used == 60
    assert len(sleeps) == 59
    assert manager.state == TunnelState.TIMED_OUT
    assert not manager.established


def test_error_line_fails(paths, ios17):
    helper = FakeHelper(*paths, log_text="ERROR: Device is not connected\n")
    manager = make_manager(helper)

    with pytest.raises(TunnelStartFailed) as info:
        manager.start_tunnel(ios17, PYTHON)

    assert "ERROR: Device is not connected" in str(info.value)
    assert manager.state == TunnelState.FAILED
    assert manager.attempts_used == 1
    with pytest.raises(TunnelNotEstablished):
        manager.require_endpoint()


def test_spawn_refused(paths, ios17):
    helper = FakeHelper(*paths, returncode=1, stderr="User canceled.")
    manager = make_manager(helper)

    with pytest.raises(TunnelStartFailed) as info:
        manager.start_tunnel(ios17, PYTHON)

    assert str(info.value) == "Failed to authenticate or start tunnel"
    assert manager.state == TunnelState.FAILED


def test_spawn_oserror(paths, ios17):
    def spawn(argv, timeout=None):
        raise FileNotFoundError("sudo")

    helper = FakeHelper(*paths)
    helper.spawn = spawn
    manager = make_manager(helper)
    with pytest.raises(TunnelStartFailed):
        manager.start_tunnel(ios17, PYTHON)
    assert manager.state == TunnelState.FAILED


def test_cancel_stops_polling(paths, ios17):
    helper = FakeHelper(*paths, log_text="Waiting...\n")
    cancel = threading.Event()
    cancel.set()
    manager = make_manager(helper)

    with pytest.raises(TunnelStartFailed) as info:
        manager.start_tunnel(ios17, PYTHON, cancel=cancel)

    assert "cancelled" in str(info.value)
    assert manager.attempts_used == 0
    assert manager.state == TunnelState.FAILED


def test_teardown_kills_helper_and_removes_artifacts(paths, ios17):
    log_path, pid_path = paths
    helper = FakeHelper(*paths, log_text="10.0.0.5 1234\n")
    manager = make_manager(helper)
    manager.start_tunnel(ios17, PYTHON)

    manager.teardown()

    assert helper.killed == [4242]
    assert not os.path.exists(log_path)
    assert not os.path.exists(pid_path)
    assert manager.state == TunnelState.IDLE
    assert manager.session.endpoint is None

    manager.teardown()
    assert helper.killed == [4242]


def test_teardown_after_failure_still_cleans_up(paths, ios17):
    log_path, pid_path = paths
    helper = FakeHelper(*paths, log_text="Connection failed\n")
    manager = make_manager(helper)
    with pytest.raises(TunnelStartFailed):
        manager.start_tunnel(ios17, PYTHON)

    manager.teardown()
    assert helper.killed == [4242]
    assert not os.path.exists(pid_path)


def test_teardown_picks_up_stale_pid_file(paths):
    log_path, pid_path = paths
    with open(pid_path, "w") as f:
        f.write("777")
    helper = FakeHelper(*paths)
    helper.alive.add(777)
    make_manager(helper).teardown()
    assert helper.killed == [777]
    assert not os.path.exists(pid_path)


def test_new_tunnel_replaces_old_one(paths, ios17):
    helper = FakeHelper(*paths, log_text="10.0.0.5 1234\n")
    manager = make_manager(helper)
    manager.start_tunnel(ios17, PYTHON)

    helper.pid = 5000
    helper.log_text = "10.0.0.6 2345\n"
    session = manager.start_tunnel(ios17, PYTHON)

    assert helper.killed == [4242]
    assert session.endpoint.port == 2345
    assert session.pid == 5000
