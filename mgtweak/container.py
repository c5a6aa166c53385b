"""
MobileGestalt cache container
=============================

Typed view over com.apple.MobileGestalt.plist.

Top-level keys:
  CacheData     bytes   opaque blob, holds DeviceClassNumber among others
  CacheExtra    dict    string-keyed scalars (obfuscated MobileGestalt keys)
  CacheVersion  str     build version the cache was generated for

A container is a snapshot: with_blob() / with_extra() return a new one and
never touch the receiver. The blob keeps its length across every mutation.
"""

import copy
import plistlib
from datetime import datetime
from xml.parsers.expat import ExpatError

from .errors import MalformedContainer, MissingBlob

KEY_CACHE_DATA = "CacheData"
KEY_CACHE_EXTRA = "CacheExtra"
KEY_CACHE_VERSION = "CacheVersion"

# CacheExtra key holding ProductType (e.g. "iPhone15,2")
KEY_PRODUCT_TYPE = "0+nc/Udy4WNG8S+Q7a/s1A"

SCALAR_TYPES = (bool, int, float, str, bytes, datetime)


class BinaryContainer:
    """Parsed MobileGestalt plist"""

    def __init__(self, fields):
        if not isinstance(fields, dict):
            raise MalformedContainer(f"Expected a dictionary at plist root, got {type(fields).__name__}")
        self._fields = fields

    @classmethod
    def parse(cls, data):
        try:
            fields = plistlib.loads(bytes(data))
        except (plistlib.InvalidFileException, ExpatError, ValueError, TypeError, OverflowError) as e:
            raise MalformedContainer(f"Invalid plist format: {e}") from e
        return cls(fields)

    @classmethod
    def load(cls, filename):
        with open(filename, "rb") as f:
            return cls.parse(f.read())

    def serialize(self):
        return plistlib.dumps(self._fields, fmt=plistlib.FMT_BINARY, sort_keys=False)

    def save(self, filename):
        with open(filename, "wb") as f:
            f.write(self.serialize())

    # --- Field access ---
    def get(self, key, default=None):
        return copy.deepcopy(self._fields.get(key, default))

    def keys(self):
        return list(self._fields)

    @property
    def has_blob(self):
        return isinstance(self._fields.get(KEY_CACHE_DATA), (bytes, bytearray))

    @property
    def blob(self):
        value = self._fields.get(KEY_CACHE_DATA)
        if value is None:
            raise MissingBlob("CacheData not found in MobileGestalt")
        if not isinstance(value, (bytes, bytearray)):
            raise MissingBlob(f"CacheData is {type(value).__name__}, expected data")
        return bytes(value)

    @property
    def extra(self):
        """CacheExtra as a fresh dict; a missing or malformed entry reads as empty."""
        value = self._fields.get(KEY_CACHE_EXTRA)
        if not isinstance(value, dict):
            return {}
        return copy.deepcopy(value)

    @property
    def has_extra(self):
        return isinstance(self._fields.get(KEY_CACHE_EXTRA), dict)

    @property
    def version(self):
        value = self._fields.get(KEY_CACHE_VERSION)
        return value if isinstance(value, str) else None

    @property
    def product_type(self):
        value = self.extra.get(KEY_PRODUCT_TYPE)
        return value if isinstance(value, str) else None

    # --- Snapshots ---
    def with_blob(self, blob):
        current = self.blob
        if len(blob) != len(current):
            raise ValueError(f"CacheData length must stay {len(current)} bytes, got {len(blob)}")
        fields = copy.deepcopy(self._fields)
        fields[KEY_CACHE_DATA] = bytes(blob)
        return BinaryContainer(fields)

    def with_extra(self, extra):
        for key, value in extra.items():
            if not isinstance(key, str):
                raise ValueError(f"CacheExtra keys must be strings, got {key!r}")
            if isinstance(value, (list, dict)):
                # nested values are carried through, never written by the patcher
                continue
            if not isinstance(value, SCALAR_TYPES):
                raise ValueError(f"CacheExtra[{key!r}]: unsupported value type {type(value).__name__}")
        fields = copy.deepcopy(self._fields)
        fields[KEY_CACHE_EXTRA] = copy.deepcopy(extra)
        return BinaryContainer(fields)

    def __eq__(self, other):
        if not isinstance(other, BinaryContainer):
            return NotImplemented
        return self._fields == other._fields

    def __repr__(self):
        blob = self._fields.get(KEY_CACHE_DATA)
        size = len(blob) if isinstance(blob, (bytes, bytearray)) else None
        return (f"BinaryContainer(version={self.version!r}, blob={size} bytes, "
                f"extra={len(self.extra)} keys)")
