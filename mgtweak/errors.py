"""
mgtweak error taxonomy
======================

Every failure the engine can report derives from MgTweakError. A `hint`
carries the remediation line shown to the operator where one is known.
"""


class MgTweakError(Exception):
    hint = None

    def __init__(self, message="", hint=None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint


# ─── Protocol ─────────────────────────────────────────────────────────────────

class HandshakeFailed(MgTweakError):
    hint = "Unlock the device, accept the Trust prompt and reseat the cable, then retry."


class ServiceUnavailable(MgTweakError):
    pass


class TransferFailed(MgTweakError):
    pass


class StreamError(MgTweakError):
    pass


# ─── Container / patch ────────────────────────────────────────────────────────

class MalformedContainer(MgTweakError):
    hint = "Select a valid com.apple.MobileGestalt.plist file."


class MissingBlob(MalformedContainer):
    pass


class OffsetOutOfBounds(MgTweakError):
    hint = "Verify the DeviceClassNumber offset for this iOS version."

    def __init__(self, offset, blob_length, width=8):
        super().__init__(f"Offset {offset} (0x{offset:X}) is beyond CacheData bounds "
                         f"({blob_length} bytes, field width {width})")
        self.offset = offset
        self.blob_length = blob_length
        self.width = width


# ─── Tunnel / toolchain ───────────────────────────────────────────────────────

class TunnelStartFailed(MgTweakError):
    pass


class TunnelTimedOut(MgTweakError):
    hint = "Keep the device unlocked and connected; the tunnel helper never reported an address."


class TunnelNotEstablished(MgTweakError):
    pass


class ToolchainUnavailable(MgTweakError):
    hint = "Install the toolchain manually: pip3 install pymobiledevice3"


class PrimitiveFailed(MgTweakError):
    pass


# ─── Device state ─────────────────────────────────────────────────────────────

DEVELOPER_MODE_STEPS = (
    "1. Go to Settings > Privacy & Security",
    "2. Scroll down to Developer Mode",
    "3. Enable Developer Mode and restart your device",
)


class DeveloperModeUnknown(MgTweakError):
    hint = "Could not query Developer Mode; treating it as disabled."


class DeveloperModeDisabled(MgTweakError):
    hint = "Enable it in Settings > Privacy & Security > Developer Mode, then restart the device."


def describe_failure(exc):
    """One-line cause plus remediation hint, or the raw cause text."""
    cause = str(exc) or exc.__class__.__name__
    hint = getattr(exc, "hint", None)
    if hint:
        return f"{cause} ({hint})"
    return cause
