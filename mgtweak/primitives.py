"""
Developer primitives over an established tunnel.

Thin wrappers around `pymobiledevice3 developer dvt ... --rsd <addr> <port>`
run through the located toolchain interpreter.
"""

import json
import subprocess

from .errors import PrimitiveFailed, TunnelNotEstablished
from .logs import log_debug, log_error, log_success

SIGSTOP = 19


def _run_cmd(cmd, timeout=None):
    try:
        res = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired as e:
        return 124, (e.stdout or "").strip(), (e.stderr or "").strip()
    except OSError as e:
        return 127, "", str(e)
    return res.returncode, res.stdout.strip(), res.stderr.strip()


class RemotePrimitives:
    def __init__(self, python, session, run=_run_cmd, timeout=60):
        if not session.established or session.endpoint is None:
            raise TunnelNotEstablished("Tunnel not established")
        self.python = python
        self.endpoint = session.endpoint
        self._run = run
        self.timeout = timeout

    def _dvt(self, *args):
        cmd = [self.python, "-m", "pymobiledevice3", "developer", "dvt", *[str(a) for a in args],
               "--rsd", self.endpoint.address, str(self.endpoint.port)]
        log_debug(f"Executing: {' '.join(cmd)}", "EXPLOIT")
        code, out, err = self._run(cmd, timeout=self.timeout)
        if code != 0:
            raise PrimitiveFailed(f"dvt {args[0]} exited {code}: {err or out}")
        return out

    def launch_app(self, bundle_id):
        self._dvt("launch", bundle_id)

    def kill_process(self, pid):
        self._dvt("kill", pid)

    def signal_process(self, pid, signal):
        self._dvt("signal", pid, signal)

    def suspend_process(self, pid):
        self.signal_process(pid, SIGSTOP)

    def list_processes(self):
        """pid -> process name"""
        out = self._dvt("proclist")
        try:
            entries = json.loads(out)
        except ValueError as e:
            log_error("Failed to parse JSON output", "EXPLOIT")
            raise PrimitiveFailed(f"proclist: unparseable output: {e}") from e

        procs = {}
        for info in entries if isinstance(entries, list) else []:
            pid, name = info.get("pid"), info.get("name")
            if isinstance(pid, int) and isinstance(name, str):
                procs[pid] = name
        log_success(f"Found {len(procs)} processes", "EXPLOIT")
        return procs

    def find_pid(self, process_name):
        for pid, name in self.list_processes().items():
            if name == process_name:
                return pid
        return None
