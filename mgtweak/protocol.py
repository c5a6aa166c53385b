"""
Lockdown protocol client
========================

Per-call client for an attached iOS device, on top of pymobiledevice3:

  usbmux   -> device enumeration
  lockdown -> versioned handshake (client label), property queries,
              service start
  AFC      -> com.apple.afc, file transfer
  syslog   -> com.apple.syslog_relay, streamed log lines

Nothing is retried here. A failed handshake is usually transient (device
locked, cable reseated) and the caller decides whether to try again.
"""

import re
import socket
from contextlib import suppress

from pymobiledevice3.exceptions import PyMobileDevice3Exception
from pymobiledevice3.lockdown import create_using_usbmux
from pymobiledevice3.services.afc import AfcService
from pymobiledevice3.services.syslog import SyslogService
from pymobiledevice3.usbmux import list_devices

from .config import CLIENT_LABEL
from .errors import (DeveloperModeUnknown, HandshakeFailed, ServiceUnavailable,
                     StreamError, TransferFailed)
from .logs import log_debug, log_info, log_warn
from .models import Device

AFC_SERVICE = "com.apple.afc"
SYSLOG_SERVICE = "com.apple.syslog_relay"

SERVICE_CLASSES = {
    AFC_SERVICE: AfcService,
    SYSLOG_SERVICE: SyslogService,
}

AMFI_DOMAIN = "com.apple.security.mac.amfi"

UNKNOWN = "Unknown"

DEVICE_KEYS = ("DeviceName", "MarketingName", "HardwareModel",
               "ProductVersion", "BuildVersion", "ProductType")

# syslog_relay terminates records with "\n\x00"; either byte ends a line
_LINE_SPLIT = re.compile(rb"[\n\x00]")

_DEVICE_ERRORS = (PyMobileDevice3Exception, OSError)


class SessionHandle:
    """Open lockdown connection for one device."""

    def __init__(self, device_id, lockdown):
        self.device_id = device_id
        self.lockdown = lockdown

    def close(self):
        if self.lockdown is not None:
            with suppress(*_DEVICE_ERRORS):
                self.lockdown.close()
            self.lockdown = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class ServiceEndpoint:
    """A started lockdown service and its underlying connection."""

    def __init__(self, name, service, connection=None):
        self.name = name
        self.service = service
        self.connection = connection if connection is not None else getattr(service, "service", service)

    def close(self):
        if self.service is not None:
            with suppress(*_DEVICE_ERRORS):
                self.service.close()
            self.service = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class ProtocolClient:
    """Client for the lockdown protocol"""

    def __init__(self, label=CLIENT_LABEL, recv_slice=1.0, bufsize=4096,
                 connect=create_using_usbmux, enumerate_devices=list_devices,
                 service_classes=None):
        self.label = label
        self.recv_slice = recv_slice
        self.bufsize = bufsize
        self._connect = connect
        self._enumerate = enumerate_devices
        self._service_classes = dict(SERVICE_CLASSES if service_classes is None else service_classes)

    # ─── Discovery / handshake ───

    def list_devices(self):
        """usbmux: serials of attached devices, each listed once"""
        try:
            mux_devices = self._enumerate()
        except _DEVICE_ERRORS as e:
            raise ServiceUnavailable(f"usbmuxd not reachable: {e}",
                                     hint="Make sure usbmuxd (or Apple Mobile Device Service) is running.") from e
        serials = []
        for dev in mux_devices:
            serial = getattr(dev, "serial", dev)
            if serial and serial not in serials:
                serials.append(serial)
        log_debug(f"usbmux: {len(serials)} device(s)", "PROTO")
        return serials

    def handshake(self, device_id):
        """lockdown: connect + QueryType/pair validation under our client label"""
        try:
            lockdown = self._connect(serial=device_id, label=self.label)
        except _DEVICE_ERRORS as e:
            raise HandshakeFailed(f"Failed to create lockdown client for {device_id}: {e}") from e
        log_debug(f"Handshake OK with {device_id} (label={self.label})", "PROTO")
        return SessionHandle(device_id, lockdown)

    def query_properties(self, handle, keys):
        """lockdown GetValue for each key; anything missing reads as UNKNOWN."""
        values = {}
        for key in keys:
            try:
                value = handle.lockdown.get_value(key=key)
            except _DEVICE_ERRORS as e:
                log_debug(f"GetValue {key} failed: {e}", "PROTO")
                value = None
            values[key] = UNKNOWN if value is None or value == {} else value
        return values

    def describe_device(self, device_id):
        with self.handshake(device_id) as handle:
            props = self.query_properties(handle, DEVICE_KEYS)
        model = props["MarketingName"]
        if model == UNKNOWN:
            model = props["HardwareModel"]
        return Device(
            udid=device_id,
            name=str(props["DeviceName"]),
            model=str(model),
            version=str(props["ProductVersion"]),
            build_version=str(props["BuildVersion"]),
            product_type=str(props["ProductType"]),
        )

    def enumerate_devices(self):
        """Describe every attached device; ones that refuse the handshake are skipped."""
        devices = []
        for serial in self.list_devices():
            try:
                devices.append(self.describe_device(serial))
            except HandshakeFailed as e:
                log_warn(f"Skipping {serial}: {e}", "PROTO")
        return devices

    # ─── Services ───

    def start_service(self, handle, service_name):
        """lockdown StartService -> endpoint"""
        cls = self._service_classes.get(service_name)
        try:
            if cls is not None:
                service = cls(handle.lockdown)
                endpoint = ServiceEndpoint(service_name, service)
            else:
                connection = handle.lockdown.start_lockdown_service(service_name)
                endpoint = ServiceEndpoint(service_name, connection, connection)
        except _DEVICE_ERRORS as e:
            raise ServiceUnavailable(f"Can't start {service_name}: {e}") from e
        log_debug(f"Started {service_name}", "PROTO")
        return endpoint

    def transfer_file(self, endpoint, data, remote_path):
        """AFC: open(w) + write whole buffer + close, then verify the size."""
        afc = endpoint.service
        data = bytes(data)
        try:
            handle = afc.fopen(remote_path, "w")
            try:
                afc.fwrite(handle, data)
            finally:
                afc.fclose(handle)
            written = int(afc.stat(remote_path).get("st_size", -1))
        except _DEVICE_ERRORS as e:
            raise TransferFailed(f"Failed to write {remote_path}: {e}") from e
        if written != len(data):
            raise TransferFailed(f"Short write to {remote_path}: {written} of {len(data)} bytes")
        log_info(f"Uploaded {len(data)} bytes to {remote_path}", "PROTO")

    def upload_file(self, device_id, local_path, remote_path):
        with open(local_path, "rb") as f:
            data = f.read()
        with self.handshake(device_id) as handle:
            with self.start_service(handle, AFC_SERVICE) as endpoint:
                self.transfer_file(endpoint, data, remote_path)

    def stream_logs(self, endpoint, on_line, cancel=None):
        """syslog_relay: feed decoded lines to on_line until it returns True.

        Each receive blocks for at most recv_slice seconds so a set `cancel`
        event is noticed; after it is set no further line is delivered.
        The endpoint is closed on every exit path.
        """
        conn = endpoint.connection
        pending = b""
        try:
            conn.socket.settimeout(self.recv_slice)
            while cancel is None or not cancel.is_set():
                try:
                    chunk = conn.recv(self.bufsize)
                except socket.timeout:
                    continue
                if not chunk:
                    # end of stream, flush an unterminated last line
                    if pending:
                        self._deliver([pending], on_line, cancel)
                    return
                pending += chunk
                lines = _LINE_SPLIT.split(pending)
                pending = lines.pop()
                if self._deliver(lines, on_line, cancel):
                    return
        except _DEVICE_ERRORS as e:
            raise StreamError(f"Log stream failed: {e}") from e
        finally:
            endpoint.close()

    @staticmethod
    def _deliver(lines, on_line, cancel):
        for raw in lines:
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            if not line:
                continue
            if cancel is not None and cancel.is_set():
                return True
            if on_line(line):
                return True
        return False

    def watch_syslog(self, device_id, on_line, cancel=None):
        with self.handshake(device_id) as handle:
            endpoint = self.start_service(handle, SYSLOG_SERVICE)
            self.stream_logs(endpoint, on_line, cancel)

    # ─── Developer mode ───

    def developer_mode_status(self, handle):
        """AMFI domain, DeveloperModeStatus"""
        try:
            value = handle.lockdown.get_value(domain=AMFI_DOMAIN, key="DeveloperModeStatus")
        except _DEVICE_ERRORS as e:
            raise DeveloperModeUnknown(f"DeveloperModeStatus query failed: {e}") from e
        if not isinstance(value, bool):
            raise DeveloperModeUnknown(f"DeveloperModeStatus not reported ({value!r})")
        return value

    def query_developer_mode_enabled(self, handle):
        """Best effort: False whenever the status can't be read."""
        try:
            return self.developer_mode_status(handle)
        except DeveloperModeUnknown as e:
            log_warn(f"Could not verify developer mode: {e}", "PROTO")
            return False

    def is_developer_mode_on(self, device_id):
        try:
            with self.handshake(device_id) as handle:
                return self.query_developer_mode_enabled(handle)
        except HandshakeFailed as e:
            log_warn(f"Could not verify developer mode: {e}", "PROTO")
            return False
