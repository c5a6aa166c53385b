"""
Data model shared by the engine, the CLI and the web backend.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Device(BaseModel):
    """Identity of an attached device, re-created on every enumeration pass."""
    model_config = ConfigDict(frozen=True)

    udid: str
    name: str = "Unknown"
    model: str = "Unknown"
    version: str = "Unknown"
    build_version: str = "Unknown"
    product_type: str = "Unknown"

    @property
    def display_name(self):
        return f"{self.name} ({self.model} - iOS {self.version}) - {self.udid}"

    @property
    def major_version(self):
        head = self.version.split(".")[0]
        return int(head) if head.isdigit() else 0


class TunnelEndpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    port: int = Field(gt=0, lt=65536)


class Session(BaseModel):
    """Snapshot of the per-device tunnel state owned by TunnelSessionManager."""
    model_config = ConfigDict(frozen=True)

    device_id: Optional[str] = None
    endpoint: Optional[TunnelEndpoint] = None
    pid: Optional[int] = None
    established: bool = False


class PatchOperation(str, Enum):
    ENABLE_IPAD = "enable_ipad"
    RESTORE_IPHONE = "restore_iphone"
    USE_AS_IS = "use_as_is"

    @property
    def label(self):
        return {
            PatchOperation.ENABLE_IPAD: "Enable iPadOS Mode",
            PatchOperation.RESTORE_IPHONE: "Restore iPhone Mode",
            PatchOperation.USE_AS_IS: "Use file as-is",
        }[self]


class PatchRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation: PatchOperation = PatchOperation.USE_AS_IS
    offset: Optional[int] = Field(default=None, ge=0)


class LogLevel(str, Enum):
    NORMAL = "normal"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class LogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    level: LogLevel = LogLevel.NORMAL
    category: str = "SYS"
    timestamp: str = Field(default_factory=lambda: datetime.now().strftime("%H:%M:%S"))
