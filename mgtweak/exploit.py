"""
Downstream collaborator contract
================================

Whatever consumes the patched cache gets (device, container, session, log)
and answers with an ExploitResult. The chain itself is not part of this
package; StagingRunner is the stock runner: it pushes the patched cache to the
device over AFC and can wait for a marker line on the syslog relay.
"""

from pydantic import BaseModel

from .errors import MgTweakError, describe_failure
from .models import LogLevel
from .protocol import AFC_SERVICE, SYSLOG_SERVICE


class ExploitResult(BaseModel):
    success: bool
    detail: str = ""


class ExploitRunner:
    """execute(device, container, session, log) -> ExploitResult"""

    def execute(self, device, container, session, log):
        raise NotImplementedError


class StagingRunner(ExploitRunner):

    def __init__(self, client, remote_path, wait_marker=None, max_lines=5000, cancel=None):
        self.client = client
        self.remote_path = remote_path
        self.wait_marker = wait_marker
        self.max_lines = max_lines
        self.cancel = cancel

    def execute(self, device, container, session, log):
        data = container.serialize()
        log(f"Staging {len(data)} bytes to {self.remote_path}", LogLevel.INFO)
        try:
            with self.client.handshake(device.udid) as handle:
                with self.client.start_service(handle, AFC_SERVICE) as endpoint:
                    self.client.transfer_file(endpoint, data, self.remote_path)

                if self.wait_marker:
                    seen = self._wait_for_marker(handle, log)
                    if not seen:
                        return ExploitResult(success=False,
                                             detail=f"Marker {self.wait_marker!r} not seen in syslog")
        except MgTweakError as e:
            log(f"Error: {describe_failure(e)}", LogLevel.ERROR)
            return ExploitResult(success=False, detail=describe_failure(e))

        log(f"SUCCESS: Modified MobileGestalt staged at {self.remote_path}", LogLevel.SUCCESS)
        return ExploitResult(success=True, detail=self.remote_path)

    def _wait_for_marker(self, handle, log):
        state = {"count": 0, "seen": False}

        def on_line(line):
            state["count"] += 1
            if self.wait_marker in line:
                state["seen"] = True
                log(f"syslog: {line}", LogLevel.INFO)
                return True
            return state["count"] >= self.max_lines

        log(f"Waiting for {self.wait_marker!r} in syslog...", LogLevel.INFO)
        endpoint = self.client.start_service(handle, SYSLOG_SERVICE)
        self.client.stream_logs(endpoint, on_line, self.cancel)
        return state["seen"]
