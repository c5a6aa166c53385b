"""
Device session orchestrator
===========================

One run:

  discover -> select device + cache + operation
           -> validate cache against device   (mismatch = soft warning, needs confirmation)
           -> locate toolchain
           -> tunnel                           (iOS 17+, abort on failure / timeout)
           -> developer mode check             (abort with remediation steps)
           -> patch into a new snapshot
           -> write patched cache, hand off to the exploit runner

stop() can be called from another thread. Once a tunnel exists a stop tears it
down, also when it lands while the runner has the patch; the run then reports
cancelled whatever the runner answered. A patch is only ever handed off as a
finished snapshot.
"""

import threading
from typing import Optional

from pydantic import BaseModel, ConfigDict

from . import patcher
from .config import Settings
from .container import BinaryContainer
from .errors import (DEVELOPER_MODE_STEPS, DeveloperModeDisabled, MalformedContainer,
                     MgTweakError, TunnelStartFailed, TunnelTimedOut, describe_failure)
from .exploit import StagingRunner
from .logs import LogBook, log_error, log_info, log_success, log_warn
from .models import PatchOperation, PatchRequest
from .protocol import ProtocolClient
from .toolchain import ToolchainLocator
from .tunnel import TunnelSessionManager


class DeviceMismatch(BaseModel):
    """Cache generated for another build or product type. A warning, not an error."""
    model_config = ConfigDict(frozen=True)

    device_build: str
    cache_build: Optional[str] = None
    device_product_type: str
    cache_product_type: Optional[str] = None

    @property
    def message(self):
        return ("MobileGestalt file may be for a different device.\n\n"
                f"Device Build: {self.device_build}\n"
                f"MobileGestalt Build: {self.cache_build or 'unknown'}\n\n"
                f"Device ProductType: {self.device_product_type}\n"
                f"MobileGestalt ProductType: {self.cache_product_type or 'unknown'}\n\n"
                "Continue anyway?")


class RunResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    message: str = ""
    hint: Optional[str] = None
    cancelled: bool = False
    needs_confirmation: bool = False
    mismatch: Optional[DeviceMismatch] = None
    output_path: Optional[str] = None
    container: Optional[BinaryContainer] = None


class _Cancelled(Exception):
    pass


class DeviceSessionOrchestrator:

    def __init__(self, client, tunnels, toolchain, exploit, settings=None, logbook=None, cancel=None):
        self.client = client
        self.tunnels = tunnels
        self.toolchain = toolchain
        self.exploit = exploit
        self.settings = settings or Settings()
        self.logbook = (logbook or LogBook()).attach()
        self.devices = []
        self._cancel = cancel or threading.Event()
        self._running = False

    @classmethod
    def create(cls, settings=None):
        settings = settings or Settings()
        client = ProtocolClient(label=settings.client_label, recv_slice=settings.recv_slice,
                                bufsize=settings.recv_bufsize)
        # shared with the runner so stop() also ends its syslog wait
        cancel = threading.Event()
        return cls(
            client=client,
            tunnels=TunnelSessionManager.from_settings(settings),
            toolchain=ToolchainLocator(),
            exploit=StagingRunner(client, settings.staging_remote_path,
                                  wait_marker=settings.staging_wait_marker,
                                  max_lines=settings.staging_max_lines,
                                  cancel=cancel),
            settings=settings,
            cancel=cancel,
        )

    @property
    def running(self):
        return self._running

    @property
    def session(self):
        return self.tunnels.session

    # ─── Discovery ───

    def refresh_devices(self):
        log_info("Refreshing device list...")
        try:
            self.devices = self.client.enumerate_devices()
        except MgTweakError as e:
            log_error(f"Error listing devices: {describe_failure(e)}")
            self.devices = []
            return []
        if not self.devices:
            log_warn("No devices found. Please connect your iOS device.")
        else:
            log_success(f"Found {len(self.devices)} device(s)")
        return list(self.devices)

    def find_device(self, udid):
        for device in self.devices:
            if device.udid == udid:
                return device
        return None

    # ─── Validation ───

    def check_container(self, device, container):
        """None when the cache looks like this device's, else a DeviceMismatch."""
        if not container.has_extra:
            raise MalformedContainer("Invalid com.apple.MobileGestalt.plist file (no CacheExtra)")

        cache_build = container.version
        cache_product = container.product_type
        if cache_build == device.build_version and cache_product == device.product_type:
            return None

        mismatch = DeviceMismatch(
            device_build=device.build_version,
            cache_build=cache_build,
            device_product_type=device.product_type,
            cache_product_type=cache_product,
        )
        log_warn("Warning: MobileGestalt file may be for a different device")
        log_warn(f"Device Build: {device.build_version}, MobileGestalt Build: {cache_build or 'unknown'}")
        log_warn(f"Device ProductType: {device.product_type}, "
                 f"MobileGestalt ProductType: {cache_product or 'unknown'}")
        return mismatch

    def _preflight(self, container, request):
        """Structural checks that don't need the device."""
        if request.operation == PatchOperation.USE_AS_IS or request.offset is None:
            return
        patcher.read_identity_field(container, request.offset, self.settings.byte_order)

    # ─── Run ───

    def run(self, device, container, request, confirm=None):
        """Full sequence for one device. Returns a RunResult, never raises MgTweakError.

        confirm(mismatch) -> bool is asked when the cache looks foreign.
        """
        if not isinstance(request, PatchRequest):
            request = PatchRequest(**request)
        self._cancel.clear()
        self._running = True
        try:
            mismatch = self.check_container(device, container)
            if mismatch is not None and (confirm is None or not confirm(mismatch)):
                return RunResult(success=False, message=mismatch.message,
                                 needs_confirmation=True, mismatch=mismatch)
            self._preflight(container, request)

            python = self.toolchain.locate()
            self._check_cancel()

            if self.tunnels.requires_tunnel(device):
                self.tunnels.start_tunnel(device, python, cancel=self._cancel)
            self._check_cancel()

            log_info("Checking developer mode...")
            if not self.client.is_developer_mode_on(device.udid):
                return self._developer_mode_disabled()
            log_success("Developer mode is enabled - proceeding with exploit")
            log_info(f"Got device: {device.model} (iOS {device.version}, Build {device.build_version})")
            log_warn("Please keep your device unlocked during the process.")

            patched = patcher.apply(container, request, self.settings.byte_order)
            self._check_cancel()

            patched.save(self.settings.output_path)
            log_success(f"SUCCESS: Modified MobileGestalt saved to: {self.settings.output_path}", "PATCH")
            self._check_cancel()

            outcome = self.exploit.execute(device, patched, self.tunnels.session, self.logbook.sink())
            self._check_cancel()
            if outcome.success:
                log_success(f"Exploit finished: {outcome.detail}", "EXPLOIT")
            else:
                log_error(f"Exploit failed: {outcome.detail}", "EXPLOIT")
            return RunResult(success=outcome.success, message=outcome.detail,
                             output_path=self.settings.output_path, container=patched)

        except _Cancelled:
            return self._cancelled()
        except MgTweakError as e:
            if self._cancel.is_set():
                return self._cancelled()
            if isinstance(e, (TunnelStartFailed, TunnelTimedOut)):
                self.tunnels.teardown()
            log_error(f"Error: {describe_failure(e)}")
            return RunResult(success=False, message=str(e), hint=e.hint)
        except OSError as e:
            log_error(f"Error: {e}")
            return RunResult(success=False, message=str(e))
        finally:
            self._running = False

    def run_file(self, device, path, request, confirm=None):
        try:
            container = BinaryContainer.load(path)
        except MalformedContainer as e:
            log_error(f"Error: {describe_failure(e)}")
            return RunResult(success=False, message=str(e), hint=e.hint)
        except OSError as e:
            log_error(f"Failed to access file: {e}")
            return RunResult(success=False, message=f"Failed to access file: {e}")
        return self.run(device, container, request, confirm)

    def _developer_mode_disabled(self):
        log_error("DEVELOPER MODE NOT ENABLED!")
        log_error("Please enable Developer Mode on your device:")
        for step in DEVELOPER_MODE_STEPS:
            log_error(step)
        log_error("This is required for the exploit to work.")
        return RunResult(success=False, message="Developer Mode is not enabled on your device.",
                         hint=DeveloperModeDisabled.hint)

    def _check_cancel(self):
        if self._cancel.is_set():
            raise _Cancelled()

    def _cancelled(self):
        self.tunnels.teardown()
        log_warn("Patch cancelled")
        return RunResult(success=False, message="Patch cancelled", cancelled=True)

    def stop(self):
        self._cancel.set()
        log_warn("Patch stopped by user")

    def close(self):
        self._cancel.set()
        self.tunnels.teardown()
        self.logbook.detach()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
