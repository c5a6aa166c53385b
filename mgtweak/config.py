"""
Runtime settings
================

Defaults live on the Settings model; a JSON file (argument or the path in
$MGTWEAK_CONFIG) overlays any subset of them.

Byte order of the DeviceClassNumber field: the cache is produced on arm64
devices and patched on little-endian hosts, so "little" is the default. It is
a setting rather than a guess about the host.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field

CONFIG_ENV = "MGTWEAK_CONFIG"

CLIENT_LABEL = "mgtweak"

# Side-channel artifacts written by the privileged tunnel helper
TUNNEL_LOG_PATH = "/tmp/mgtweak_tunnel.log"
TUNNEL_PID_PATH = "/tmp/mgtweak_tunnel.pid"

# Offset the operator is offered when none is given (iOS 26 caches only)
DEFAULT_OFFSET_HINT = 0x330


class Settings(BaseModel):
    client_label: str = CLIENT_LABEL

    tunnel_log_path: str = TUNNEL_LOG_PATH
    tunnel_pid_path: str = TUNNEL_PID_PATH
    tunnel_poll_attempts: int = Field(default=60, gt=0)
    tunnel_poll_interval: float = Field(default=0.5, ge=0)
    tunnel_min_major_version: int = 17

    byte_order: Literal["little", "big"] = "little"

    recv_slice: float = Field(default=1.0, gt=0)
    recv_bufsize: int = Field(default=4096, gt=0)

    output_path: str = str(Path(tempfile.gettempdir()) / "modified_mg.plist")
    staging_remote_path: str = "/Downloads/com.apple.MobileGestalt.plist"
    # syslog line the staging runner waits for after upload; None skips the wait
    staging_wait_marker: Optional[str] = None
    staging_max_lines: int = Field(default=5000, gt=0)

    log_dir: Optional[str] = None

    web_host: str = "127.0.0.1"
    web_port: int = 8080


def load_settings(path=None):
    """Build Settings from defaults plus an optional JSON overlay."""
    path = path or os.environ.get(CONFIG_ENV)
    if not path:
        return Settings()
    with open(path, "r", encoding="utf-8") as f:
        overlay = json.load(f)
    if not isinstance(overlay, dict):
        raise ValueError(f"{path}: expected a JSON object, got {type(overlay).__name__}")
    return Settings(**overlay)
