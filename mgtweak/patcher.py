"""
Cache patcher
=============

DeviceClassNumber lives in CacheData as an 8-byte unsigned integer at an
offset that changes between iOS releases, so the caller supplies it:

  CacheData: [ ... ][ DeviceClassNumber u64 ][ ... ]
                    ^ offset         offset+8 ^

  1 = iPhone, 3 = iPad, anything else is reported as Unknown.

Without an offset only CacheExtra is touched (iPad feature keys set to 1 or
removed). That fallback is weaker and is logged as such.
"""

import struct

from .errors import OffsetOutOfBounds
from .logs import log_info, log_success, log_warn
from .models import PatchOperation, PatchRequest

FIELD_WIDTH = 8

VARIANT_IPHONE = 1
VARIANT_IPAD = 3

VARIANT_NAMES = {
    VARIANT_IPHONE: "iPhone",
    VARIANT_IPAD: "iPad",
}

TARGET_CODES = {
    PatchOperation.ENABLE_IPAD: VARIANT_IPAD,
    PatchOperation.RESTORE_IPHONE: VARIANT_IPHONE,
}

# CacheExtra feature keys flipped for iPadOS behaviour
IPAD_KEYS = (
    "uKc7FPnEO++lVhHWHFlGbQ",
    "mG0AnH/Vy1veoqoLRAIgTA",
    "UCG5MkVahJxG1YULbbd5Bg",
    "ZYqko/XM5zD3XBfN5RmaXA",
    "nVh/gwNpy7Jv1NOk00CMrw",
    "qeaj75wk3HF4DwQ8qbIi7g",
)

_FORMATS = {"little": "<Q", "big": ">Q"}


def classify(value):
    return VARIANT_NAMES.get(value, "Unknown")


def parse_offset(text):
    """Operator offset input -> int, or None when empty.

    The field is entered in hex, with or without a 0x prefix ("330" == 0x330).
    """
    if text is None:
        return None
    text = str(text).strip()
    if not text:
        return None
    digits = text[2:] if text.lower().startswith("0x") else text
    try:
        value = int(digits, 16)
    except ValueError:
        raise ValueError(f"Invalid offset format: {text!r}") from None
    if value < 0:
        raise ValueError(f"Offset must be non-negative: {text!r}")
    return value


def _check_bounds(blob, offset):
    if offset < 0 or offset > len(blob) - FIELD_WIDTH:
        raise OffsetOutOfBounds(offset, len(blob), FIELD_WIDTH)


def read_identity_field(container, offset, byte_order="little"):
    blob = container.blob
    _check_bounds(blob, offset)
    return struct.unpack_from(_FORMATS[byte_order], blob, offset)[0]


def write_identity_field(container, offset, value, byte_order="little"):
    """New container with `value` at blob[offset:offset+8]; every other byte kept."""
    blob = container.blob
    _check_bounds(blob, offset)
    if not 0 <= value < (1 << 64):
        raise ValueError(f"DeviceClassNumber value out of u64 range: {value}")
    patched = bytearray(blob)
    struct.pack_into(_FORMATS[byte_order], patched, offset, value)
    return container.with_blob(bytes(patched))


def _apply_flags(container, to_variant):
    extra = container.extra
    if to_variant == VARIANT_IPAD:
        for key in IPAD_KEYS:
            extra[key] = 1
    else:
        for key in IPAD_KEYS:
            extra.pop(key, None)
    return container.with_extra(extra)


def toggle_variant(container, offset, to_variant, byte_order="little"):
    """Switch the cache to `to_variant` (VARIANT_IPAD / VARIANT_IPHONE)."""
    if to_variant not in VARIANT_NAMES:
        raise ValueError(f"Unknown target variant: {to_variant}")
    name = VARIANT_NAMES[to_variant]

    if offset is None:
        patched = _apply_flags(container, to_variant)
        log_warn(f"{name} mode applied to CacheExtra only - may not fully work without CacheData", "PATCH")
        return patched

    current = read_identity_field(container, offset, byte_order)
    log_info(f"Current DeviceClassNumber value: {current} ({classify(current)})", "PATCH")

    patched = write_identity_field(container, offset, to_variant, byte_order)
    new_value = read_identity_field(patched, offset, byte_order)
    log_success(f"New DeviceClassNumber value: {new_value} ({classify(new_value)})", "PATCH")

    patched = _apply_flags(patched, to_variant)
    log_success(f"Successfully wrote {name} device class to MobileGestalt", "PATCH")
    return patched


def apply(container, request, byte_order="little"):
    """Run a PatchRequest; the input container is never modified."""
    if not isinstance(request, PatchRequest):
        request = PatchRequest(**request)

    if request.operation == PatchOperation.USE_AS_IS:
        log_info("Using file as-is", "PATCH")
        return container

    if request.offset is not None:
        log_info(f"Using offset: {request.offset} (0x{request.offset:X})", "PATCH")
    return toggle_variant(container, request.offset, TARGET_CODES[request.operation], byte_order)
