"""
mgtweak: MobileGestalt DeviceClassNumber tweaker
================================================

Usage:
  mgtweak <command> [args]

Commands:
  devices                          List attached devices
  info <udid>                      Device identity + developer mode
  check <udid> <plist>             Compare a MobileGestalt cache with the device
  read <plist> <offset>            Show DeviceClassNumber at offset (hex)
  patch <udid> <plist> <op> [offset] [--yes] [--default-offset] [--flags-only]
                                   op: enable_ipad | restore_iphone | use_as_is
  tunnel <udid>                    Start the RemoteXPC tunnel and wait (Ctrl+C to stop)
  ps <udid> [name]                 List device processes over the tunnel (pid of [name])
  syslog <udid> [pattern]          Stream syslog, stop at first line containing pattern
  serve [port]                     Run the web backend

Settings: JSON file named by $MGTWEAK_CONFIG.

Example:
  mgtweak patch 00008110-000A1B2C3D4E5F60 com.apple.MobileGestalt.plist enable_ipad 0x330
"""

import sys
import threading

from .config import DEFAULT_OFFSET_HINT, load_settings
from .container import BinaryContainer
from .errors import MgTweakError, describe_failure
from .logs import configure_logging
from .models import PatchOperation, PatchRequest
from .orchestrator import DeviceSessionOrchestrator
from .patcher import classify, parse_offset, read_identity_field
from .primitives import RemotePrimitives


def _ask(prompt):
    try:
        return input(prompt).strip().lower() in ("y", "yes")
    except EOFError:
        return False


def _require_device(orch, udid):
    orch.refresh_devices()
    device = orch.find_device(udid)
    if device is None:
        print(f"[!] Device {udid} not found")
        sys.exit(1)
    return device


# ═══════════════════════════════════════════════════════════
# COMMANDS
# ═══════════════════════════════════════════════════════════

def cmd_devices(orch, args):
    devices = orch.refresh_devices()
    print(f"\n=== Devices ({len(devices)}) ===")
    for d in devices:
        print(f"  {d.display_name}")
    return 0


def cmd_info(orch, args):
    device = _require_device(orch, args[0])
    print("\n=== Device Information ===")
    print(f"  Name:         {device.name}")
    print(f"  Model:        {device.model}")
    print(f"  iOS:          {device.version}")
    print(f"  Build:        {device.build_version}")
    print(f"  ProductType:  {device.product_type}")
    print(f"  UDID:         {device.udid}")
    print(f"  Tunnel:       {'required' if orch.tunnels.requires_tunnel(device) else 'not required'}")
    dev_mode = orch.client.is_developer_mode_on(device.udid)
    print(f"  Dev Mode:     {'ON' if dev_mode else 'OFF / unknown'}")
    return 0


def cmd_check(orch, args):
    device = _require_device(orch, args[0])
    container = BinaryContainer.load(args[1])
    mismatch = orch.check_container(device, container)
    if mismatch is None:
        print("[+] MobileGestalt cache matches the device")
        return 0
    print(f"[!] {mismatch.message}")
    return 2


def cmd_read(orch, args):
    container = BinaryContainer.load(args[0])
    offset = parse_offset(args[1])
    value = read_identity_field(container, offset, orch.settings.byte_order)
    print(f"\n=== DeviceClassNumber @ 0x{offset:X} ===")
    print(f"  CacheData:  {len(container.blob)} bytes")
    print(f"  Value:      {value} ({classify(value)})")
    return 0


def cmd_patch(orch, args):
    flags = {a for a in args if a.startswith("--")}
    pos = [a for a in args if not a.startswith("--")]
    if len(pos) < 3:
        print(__doc__)
        return 1

    udid, path, op = pos[0], pos[1], pos[2]
    operation = PatchOperation(op.lower())
    offset = parse_offset(pos[3]) if len(pos) > 3 else None

    if operation != PatchOperation.USE_AS_IS and offset is None and "--flags-only" not in flags:
        print(f"[!] No offset specified. The default offset for iOS 26 is 0x{DEFAULT_OFFSET_HINT:X}.")
        print("    WARNING: This offset MAY be WRONG for your iOS version and CAN cause a bootloop!")
        print("    BACKUP your device first. Use --flags-only for the CacheExtra-only patch.")
        if "--default-offset" not in flags and not _ask(f"  Use 0x{DEFAULT_OFFSET_HINT:X}? [y/N] "):
            print("  Cancelled.")
            return 1
        offset = DEFAULT_OFFSET_HINT

    device = _require_device(orch, udid)
    request = PatchRequest(operation=operation, offset=offset)

    def confirm(mismatch):
        print(f"\n[!] {mismatch.message}")
        return "--yes" in flags or _ask("  [y/N] ")

    result = orch.run_file(device, path, request, confirm=confirm)
    if result.success:
        print(f"[+] Done: {result.message}")
        return 0
    print(f"[!] {result.message}")
    if result.hint:
        print(f"    {result.hint}")
    return 1


def cmd_tunnel(orch, args):
    device = _require_device(orch, args[0])
    if not orch.tunnels.requires_tunnel(device):
        print(f"[*] iOS {device.version} does not need a tunnel")
        return 0
    python = orch.toolchain.locate()
    session = orch.tunnels.start_tunnel(device, python)
    print(f"[+] RSD {session.endpoint.address} {session.endpoint.port} (pid {session.pid})")
    print("    Ctrl+C to stop")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        print("\n[*] Stopping tunnel")
    return 0


def cmd_ps(orch, args):
    device = _require_device(orch, args[0])
    python = orch.toolchain.locate()
    session = orch.tunnels.start_tunnel(device, python)
    remote = RemotePrimitives(python, session)
    if len(args) > 1:
        pid = remote.find_pid(args[1])
        if pid is None:
            print(f"[!] {args[1]} is not running")
            return 1
        print(f"[+] {args[1]}: pid {pid}")
        return 0
    for pid, name in sorted(remote.list_processes().items()):
        print(f"  {pid:>6}  {name}")
    return 0


def cmd_syslog(orch, args):
    udid = args[0]
    pattern = args[1] if len(args) > 1 else None

    def on_line(line):
        print(line)
        return pattern is not None and pattern in line

    cancel = threading.Event()
    try:
        orch.client.watch_syslog(udid, on_line, cancel)
    except KeyboardInterrupt:
        cancel.set()
        print("\n  Monitoring stopped.")
    return 0


def cmd_serve(orch, args):
    import uvicorn
    from .web.server import create_app

    port = int(args[0]) if args else orch.settings.web_port
    uvicorn.run(create_app(orch), host=orch.settings.web_host, port=port)
    return 0


COMMANDS = {
    "devices": (cmd_devices, 0),
    "info": (cmd_info, 1),
    "check": (cmd_check, 2),
    "read": (cmd_read, 2),
    "patch": (cmd_patch, 3),
    "tunnel": (cmd_tunnel, 1),
    "ps": (cmd_ps, 1),
    "syslog": (cmd_syslog, 1),
    "serve": (cmd_serve, 0),
}


# ═══════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════

def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] not in COMMANDS:
        print(__doc__)
        return 1

    handler, min_args = COMMANDS[argv[0]]
    args = argv[1:]
    if len([a for a in args if not a.startswith("--")]) < min_args:
        print(f"Error: {argv[0]} needs {min_args} argument(s)")
        print(__doc__)
        return 1

    settings = load_settings()
    configure_logging(settings.log_dir)
    orch = DeviceSessionOrchestrator.create(settings)
    try:
        return handler(orch, args)
    except KeyboardInterrupt:
        print("\n[*] Interrupted")
        return 130
    except MgTweakError as e:
        print(f"[!] {describe_failure(e)}")
        return 1
    except (OSError, ValueError) as e:
        print(f"[!] Error: {e}")
        return 1
    finally:
        orch.close()


if __name__ == "__main__":
    sys.exit(main())
