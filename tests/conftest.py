"""Shared fakes: usbmux/lockdown/AFC/syslog stand-ins, the tunnel helper, toolchain and exploit."""

import struct
from types import SimpleNamespace

import pytest

from mgtweak.config import Settings
from mgtweak.container import (KEY_CACHE_DATA, KEY_CACHE_EXTRA, KEY_CACHE_VERSION,
                               KEY_PRODUCT_TYPE, BinaryContainer)
from mgtweak.exploit import ExploitResult, ExploitRunner
from mgtweak.logs import LogBook, log
from mgtweak.models import Device, LogLevel
from mgtweak.orchestrator import DeviceSessionOrchestrator
from mgtweak.protocol import AFC_SERVICE, AMFI_DOMAIN, SYSLOG_SERVICE, ProtocolClient
from mgtweak.tunnel import TunnelSessionManager

UDID = "00008110-000A1B2C3D4E5F60"
OFFSET = 0x330
BLOB_SIZE = 0x400

DEVICE_VALUES = {
    "DeviceName": "Test iPhone",
    "MarketingName": "iPhone 14 Pro",
    "HardwareModel": "D73AP",
    "ProductVersion": "16.5",
    "BuildVersion": "20F66",
    "ProductType": "iPhone15,2",
}


# ─── MobileGestalt caches ───

def make_fields(version="20F66", product_type="iPhone15,2", value=1, offset=OFFSET,
                size=BLOB_SIZE, extra=True, blob=True):
    fields = {}
    if blob:
        data = bytearray(bytes(range(256)) * (size // 256))
        struct.pack_into("<Q", data, offset, value)
        fields[KEY_CACHE_DATA] = bytes(data)
    if extra:
        fields[KEY_CACHE_EXTRA] = {
            KEY_PRODUCT_TYPE: product_type,
            "oPeik/9e8lQWMszEjbPzng": "keep-me",
            "nested": {"a": [1, 2]},
        }
    if version is not None:
        fields[KEY_CACHE_VERSION] = version
    return fields


def make_container(**kwargs):
    return BinaryContainer(make_fields(**kwargs))


def make_device(**overrides):
    values = dict(udid=UDID, name="Test iPhone", model="iPhone 14 Pro", version="16.5",
                  build_version="20F66", product_type="iPhone15,2")
    values.update(overrides)
    return Device(**values)


# ─── Device side ───

class FakeLockdown:
    def __init__(self, values=None, developer_mode=True, services=None):
        self.values = dict(DEVICE_VALUES if values is None else values)
        self.developer_mode = developer_mode
        self.services = services or {}
        self.closed = False

    def get_value(self, domain=None, key=None):
        if domain == AMFI_DOMAIN:
            if isinstance(self.developer_mode, Exception):
                raise self.developer_mode
            return self.developer_mode
        return self.values.get(key)

    def start_lockdown_service(self, name):
        if name not in self.services:
            raise ConnectionResetError(f"service {name} refused")
        return self.services[name]

    def close(self):
        self.closed = True


class FakeSocket:
    def __init__(self):
        self.timeout = None

    def settimeout(self, value):
        self.timeout = value


class FakeConnection:
    """recv() hands out queued chunks; an Exception item is raised, an empty queue is EOF."""

    def __init__(self, chunks=()):
        self.chunks = list(chunks)
        self.socket = FakeSocket()
        self.recv_calls = 0
        self.closed = False

    def recv(self, bufsize):
        self.recv_calls += 1
        if not self.chunks:
            return b""
        item = self.chunks.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


class FakeSyslog:
    def __init__(self, connection):
        self.service = connection
        self.closed = False

    def close(self):
        self.closed = True


class FakeAfc:
    def __init__(self, short_by=0):
        self.files = {}
        self.short_by = short_by
        self.closed_handles = []
        self.closed = False

    def fopen(self, path, mode):
        assert mode == "w"
        return path

    def fwrite(self, handle, data):
        self.files[handle] = data[:len(data) - self.short_by]

    def fclose(self, handle):
        self.closed_handles.append(handle)

    def stat(self, path):
        return {"st_size": len(self.files[path])}

    def close(self):
        self.closed = True


class FakeDeviceBus:
    """usbmux enumeration + lockdown connect for a set of fake devices."""

    def __init__(self):
        self.lockdowns = {}
        self.refuse = set()
        self.afc = FakeAfc()
        self.syslog_chunks = []
        self.syslog_services = []
        self.labels = []

    def add(self, udid=UDID, **kwargs):
        self.lockdowns[udid] = FakeLockdown(**kwargs)
        return self.lockdowns[udid]

    def list_devices(self):
        return [SimpleNamespace(serial=s) for s in self.lockdowns]

    def connect(self, serial=None, label=None):
        self.labels.append(label)
        if serial in self.refuse or serial not in self.lockdowns:
            raise ConnectionRefusedError(f"{serial}: pairing refused")
        return self.lockdowns[serial]

    def make_syslog(self, lockdown):
        service = FakeSyslog(FakeConnection(self.syslog_chunks))
        self.syslog_services.append(service)
        return service

    def client(self, **kwargs):
        return ProtocolClient(
            label="mgtweak-test",
            connect=self.connect,
            enumerate_devices=self.list_devices,
            service_classes={AFC_SERVICE: lambda lockdown: self.afc, SYSLOG_SERVICE: self.make_syslog},
            **kwargs,
        )


# ─── Host side ───

class FakeHelper:
    """The privileged tunnel helper: spawning it writes the pid file and the log."""

    def __init__(self, log_path, pid_path, pid=4242, log_text="", returncode=0, stderr=""):
        self.log_path = log_path
        self.pid_path = pid_path
        self.pid = pid
        self.log_text = log_text
        self.returncode = returncode
        self.stderr = stderr
        self.argv = []
        self.killed = []
        self.alive = set()

    def spawn(self, argv, timeout=None):
        self.argv.append(argv)
        if self.returncode == 0:
            with open(self.pid_path, "w") as f:
                f.write(f"{self.pid}\n")
            with open(self.log_path, "w") as f:
                f.write(self.log_text)
            self.alive.add(self.pid)
        return SimpleNamespace(returncode=self.returncode, stdout="", stderr=self.stderr)

    def append(self, text):
        with open(self.log_path, "a") as f:
            f.write(text)

    def kill(self, pid):
        self.killed.append(pid)
        self.alive.discard(pid)

    def is_alive(self, pid):
        return pid in self.alive


def make_manager(helper, sleep=None, **kwargs):
    return TunnelSessionManager(
        log_path=helper.log_path, pid_path=helper.pid_path,
        spawn=helper.spawn, kill=helper.kill, is_alive=helper.is_alive,
        sleep=sleep or (lambda seconds: None), **kwargs)


class FakeToolchain:
    def __init__(self, python="/usr/bin/python3", error=None, on_locate=None):
        self.python = python
        self.error = error
        self.on_locate = on_locate
        self.calls = 0

    def locate(self):
        self.calls += 1
        if self.on_locate:
            self.on_locate()
        if self.error:
            raise self.error
        return self.python


class FakeExploit(ExploitRunner):
    def __init__(self, result=None, gate=None, on_execute=None):
        self.result = result or ExploitResult(success=True, detail="staged")
        self.gate = gate
        self.on_execute = on_execute
        self.calls = []

    def execute(self, device, container, session, log):
        self.calls.append((device, container, session))
        log("Exploit step", LogLevel.INFO)
        if self.on_execute is not None:
            self.on_execute()
        if self.gate is not None:
            self.gate.wait(5)
        return self.result


# ─── Fixtures ───

@pytest.fixture(autouse=True)
def _restore_handlers():
    handlers = list(log.handlers)
    yield
    for h in list(log.handlers):
        if h not in handlers:
            log.removeHandler(h)


@pytest.fixture
def container():
    return make_container()


@pytest.fixture
def device():
    return make_device()


@pytest.fixture
def logbook():
    book = LogBook().attach()
    yield book
    book.detach()


@pytest.fixture
def bus():
    b = FakeDeviceBus()
    b.add()
    return b


@pytest.fixture
def settings(tmp_path):
    return Settings(
        tunnel_log_path=str(tmp_path / "tunnel.log"),
        tunnel_pid_path=str(tmp_path / "tunnel.pid"),
        tunnel_poll_attempts=3,
        tunnel_poll_interval=0,
        output_path=str(tmp_path / "modified_mg.plist"),
    )


@pytest.fixture
def helper(settings):
    return FakeHelper(settings.tunnel_log_path, settings.tunnel_pid_path, log_text="10.0.0.5 49152\n")


@pytest.fixture
def toolchain():
    return FakeToolchain()


@pytest.fixture
def exploit():
    return FakeExploit()


@pytest.fixture
def orchestrator(bus, helper, toolchain, exploit, settings):
    tunnels = TunnelSessionManager.from_settings(
        settings, spawn=helper.spawn, kill=helper.kill, is_alive=helper.is_alive,
        sleep=lambda seconds: None)
    orch = DeviceSessionOrchestrator(client=bus.client(), tunnels=tunnels, toolchain=toolchain,
                                     exploit=exploit, settings=settings)
    yield orch
    orch.close()
