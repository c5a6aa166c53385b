"""
Companion toolchain locator
===========================

The tunnel helper and the developer primitives run through a python3
interpreter that can import pymobiledevice3. This module only finds one;
installing it is somebody else's job.
"""

import shutil
import subprocess
import sys

from .errors import ToolchainUnavailable
from .logs import log_info, log_success, log_warn

CANDIDATE_PATHS = [
    "/opt/homebrew/bin/python3",
    "/usr/local/bin/python3",
    "/usr/bin/python3",
    "/Library/Frameworks/Python.framework/Versions/Current/bin/python3",
    "/Library/Frameworks/Python.framework/Versions/3.11/bin/python3",
    "/Library/Frameworks/Python.framework/Versions/3.10/bin/python3",
    "/Library/Frameworks/Python.framework/Versions/3.9/bin/python3",
]

PROBE_MODULE = "pymobiledevice3"


def _probe(python, timeout=20):
    """True if `python -c 'import pymobiledevice3'` succeeds"""
    try:
        res = subprocess.run([python, "-c", f"import {PROBE_MODULE}"],
                             capture_output=True, timeout=timeout, check=False)
    except (OSError, subprocess.TimeoutExpired):
        return False
    return res.returncode == 0


class ToolchainLocator:
    """Finds (and remembers) a usable interpreter."""

    def __init__(self, candidates=None, probe=_probe):
        self.candidates = list(candidates) if candidates is not None else self._default_candidates()
        self._probe = probe
        self._found = None

    @staticmethod
    def _default_candidates():
        paths = [sys.executable]
        on_path = shutil.which("python3")
        if on_path:
            paths.append(on_path)
        paths.extend(CANDIDATE_PATHS)
        seen = []
        for p in paths:
            if p and p not in seen:
                seen.append(p)
        return seen

    def locate(self):
        """Interpreter path, or ToolchainUnavailable."""
        if self._found:
            return self._found
        log_info("Checking environment...", "SYS")
        for path in self.candidates:
            if self._probe(path):
                self._found = path
                log_success(f"[OK] {PROBE_MODULE} available via {path}", "SYS")
                return path
        log_warn(f"No python3 with {PROBE_MODULE} found", "SYS")
        raise ToolchainUnavailable(f"No python3 interpreter with {PROBE_MODULE} found "
                                   f"(tried {len(self.candidates)} paths)")
