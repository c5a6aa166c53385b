"""
RemoteXPC tunnel session manager
================================

iOS 17+ devices only expose developer services through a tunnel started by
`pymobiledevice3 remote start-tunnel`. The helper needs root and runs
detached, so the only thing we can observe is what it writes:

  /tmp/mgtweak_tunnel.log   combined stdout/stderr of the helper
  /tmp/mgtweak_tunnel.pid   pid of the helper (`echo $!`)

--script-mode prints one "<address> <port>" line once the tunnel is up.

State machine (one attempt):

  IDLE -> STARTING -> POLLING -> ESTABLISHED
             |           |
             |           +-> FAILED      (error line in the log)
             |           +-> TIMED_OUT   (attempt budget used up)
             +-> FAILED                  (spawn / privilege failure)

The log is append-only and only its latest status line counts, so each poll
scans it newest-first and stops at the first recognised line.
"""

import os
import platform
import re
import shlex
import subprocess
import time
from enum import Enum

from .config import TUNNEL_LOG_PATH, TUNNEL_PID_PATH
from .errors import TunnelNotEstablished, TunnelStartFailed, TunnelTimedOut
from .logs import log_debug, log_error, log_info, log_success, log_warn
from .models import Session, TunnelEndpoint

MIN_TUNNEL_MAJOR = 17

ERROR_MARKERS = ("error", "failed")

_ENDPOINT_LINE = re.compile(r"^(\S+)\s+(\d{1,5})$")


class TunnelState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    POLLING = "polling"
    ESTABLISHED = "established"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


# ═══════════════════════════════════════════════════════════
# SIDE-CHANNEL PARSING
# ═══════════════════════════════════════════════════════════

def parse_endpoint_line(line):
    """'<address> <port>' -> TunnelEndpoint, else None"""
    m = _ENDPOINT_LINE.match(line.strip())
    if not m:
        return None
    port = int(m.group(2))
    if not 0 < port < 65536:
        return None
    return TunnelEndpoint(address=m.group(1), port=port)


def is_error_line(line):
    lowered = line.lower()
    return any(marker in lowered for marker in ERROR_MARKERS)


def scan_log(text):
    """Newest-first scan of the helper log.

    Returns (ESTABLISHED, TunnelEndpoint), (FAILED, line) or None when no
    line is recognised yet.
    """
    for line in reversed(text.splitlines()):
        trimmed = line.strip()
        if not trimmed:
            continue
        endpoint = parse_endpoint_line(trimmed)
        if endpoint is not None:
            return TunnelState.ESTABLISHED, endpoint
        if is_error_line(trimmed):
            return TunnelState.FAILED, trimmed
    return None


def read_pid(path):
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read().strip()
    except OSError:
        return None
    return int(text) if text.isdigit() else None


# ═══════════════════════════════════════════════════════════
# HELPER PROCESS
# ═══════════════════════════════════════════════════════════

def build_tunnel_command(python, udid, log_path=TUNNEL_LOG_PATH, pid_path=TUNNEL_PID_PATH):
    """Shell line that backgrounds the helper and records its pid."""
    q = shlex.quote
    return (f"{q(python)} -m pymobiledevice3 remote start-tunnel --script-mode --udid {q(udid)} "
            f"> {q(log_path)} 2>&1 & echo $! > {q(pid_path)}")


def elevate(shell_cmd, system=None):
    """Wrap a shell line so it runs as root (password prompt on macOS)."""
    system = system or platform.system()
    if system == "Darwin":
        escaped = shell_cmd.replace("\\", "\\\\").replace('"', '\\"')
        return ["/usr/bin/osascript", "-e",
                f'do shell script "{escaped}" with administrator privileges']
    return ["sudo", "sh", "-c", shell_cmd]


def _spawn(argv, timeout=None):
    return subprocess.run(argv, capture_output=True, text=True, timeout=timeout, check=False)


def _is_alive(pid):
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # owned by root, still running
        return True
    except OSError:
        return False
    return True


def _kill(pid):
    """SIGKILL the helper; it runs as root, so fall back to sudo."""
    try:
        os.kill(pid, 9)
        return
    except ProcessLookupError:
        return
    except PermissionError:
        pass
    try:
        subprocess.run(["sudo", "-n", "kill", "-9", str(pid)],
                       capture_output=True, timeout=10, check=False)
    except (OSError, subprocess.TimeoutExpired) as e:
        log_warn(f"Could not kill tunnel helper {pid}: {e}", "TUNNEL")


# ═══════════════════════════════════════════════════════════
# SESSION MANAGER
# ═══════════════════════════════════════════════════════════

class TunnelSessionManager:
    """Owns the single tunnel session of an orchestrator."""

    def __init__(self, log_path=TUNNEL_LOG_PATH, pid_path=TUNNEL_PID_PATH,
                 attempts=60, interval=0.5, min_major=MIN_TUNNEL_MAJOR,
                 spawn=_spawn, kill=_kill, is_alive=_is_alive, sleep=time.sleep):
        self.log_path = log_path
        self.pid_path = pid_path
        self.attempts = attempts
        self.interval = interval
        self.min_major = min_major
        self._spawn = spawn
        self._kill = kill
        self._is_alive = is_alive
        self._sleep = sleep

        self.state = TunnelState.IDLE
        self.failure = None
        self.attempts_used = 0
        self._device_id = None
        self._endpoint = None
        self._pid = None

    @classmethod
    def from_settings(cls, settings, **kwargs):
        return cls(log_path=settings.tunnel_log_path, pid_path=settings.tunnel_pid_path,
                   attempts=settings.tunnel_poll_attempts, interval=settings.tunnel_poll_interval,
                   min_major=settings.tunnel_min_major_version, **kwargs)

    @property
    def session(self):
        return Session(
            device_id=self._device_id,
            endpoint=self._endpoint,
            pid=self._pid,
            established=self.state == TunnelState.ESTABLISHED,
        )

    @property
    def established(self):
        return self.state == TunnelState.ESTABLISHED

    def requires_tunnel(self, device):
        return device.major_version >= self.min_major

    def require_endpoint(self):
        if not self.established or self._endpoint is None:
            raise TunnelNotEstablished("Tunnel not established")
        return self._endpoint

    # ─── Teardown ───

    def teardown(self):
        """Kill any helper we know of and remove the side-channel files.

        Safe to call at any time, any number of times.
        """
        pids = []
        if self._pid:
            pids.append(self._pid)
        file_pid = read_pid(self.pid_path)
        if file_pid and file_pid not in pids:
            pids.append(file_pid)

        for pid in pids:
            if self._is_alive(pid):
                log_info(f"Stopping tunnel helper (pid {pid})", "TUNNEL")
                self._kill(pid)

        for path in (self.log_path, self.pid_path):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                log_warn(f"Could not remove {path}: {e}", "TUNNEL")

        self.state = TunnelState.IDLE
        self.failure = None
        self.attempts_used = 0
        self._device_id = None
        self._endpoint = None
        self._pid = None

    # ─── Start ───

    def start_tunnel(self, device, python, cancel=None):
        """Teardown, spawn the helper, poll its log. Returns the Session."""
        if not self.requires_tunnel(device):
            log_debug(f"iOS {device.version} does not need a tunnel", "TUNNEL")
            return self.session

        self.teardown()
        self.state = TunnelState.STARTING
        self._device_id = device.udid

        log_info("This device is using iOS 17 or newer, starting RemoteXPC tunnel...", "TUNNEL")
        log_warn("You will be prompted for your password (administrator access required)", "TUNNEL")

        argv = elevate(build_tunnel_command(python, device.udid, self.log_path, self.pid_path))
        try:
            res = self._spawn(argv)
        except (OSError, subprocess.SubprocessError) as e:
            self._fail(f"Failed to start tunnel: {e}")
            raise TunnelStartFailed(self.failure) from e

        if res.returncode != 0:
            output = ((res.stdout or "") + (res.stderr or "")).strip() or "Unknown error"
            log_error(f"Tunnel err: {output}", "TUNNEL")
            self._fail("Failed to authenticate or start tunnel")
            raise TunnelStartFailed(self.failure)

        log_info("Tunnel started, waiting for connection...", "TUNNEL")
        return self.poll(cancel)

    def poll(self, cancel=None):
        """Bounded blocking wait for a status line in the helper log.

        A set `cancel` event ends the wait early as FAILED.
        """
        self.state = TunnelState.POLLING
        for attempt in range(1, self.attempts + 1):
            if cancel is not None and cancel.is_set():
                self._pid = read_pid(self.pid_path)
                self._fail("Tunnel setup cancelled")
                raise TunnelStartFailed(self.failure)
            self.attempts_used = attempt
            status = scan_log(self._read_log())

            if status is not None:
                kind, detail = status
                if kind == TunnelState.ESTABLISHED:
                    self._endpoint = detail
                    self._pid = read_pid(self.pid_path)
                    self.state = TunnelState.ESTABLISHED
                    log_success(f"Tunnel established: {detail.address}:{detail.port}", "TUNNEL")
                    return self.session

                log_error(f"Tunnel error: {detail}", "TUNNEL")
                self._pid = read_pid(self.pid_path)
                self._fail(f"Tunnel failed: {detail}")
                raise TunnelStartFailed(self.failure)

            if attempt < self.attempts:
                if cancel is not None:
                    cancel.wait(self.interval)
                else:
                    self._sleep(self.interval)

        self.state = TunnelState.TIMED_OUT
        self._pid = read_pid(self.pid_path)
        self.failure = "Tunnel setup timeout - could not read tunnel address"
        log_error(self.failure, "TUNNEL")
        raise TunnelTimedOut(self.failure)

    def _read_log(self):
        try:
            with open(self.log_path, "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError:
            return ""

    def _fail(self, reason):
        self.state = TunnelState.FAILED
        self.failure = reason
