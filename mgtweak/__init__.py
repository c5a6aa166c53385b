"""MobileGestalt DeviceClassNumber tweaker: device sessions, tunnel management and cache patching."""

__version__ = "1.0.0"
