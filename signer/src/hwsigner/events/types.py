"""Event type constants for the hwsigner event notifier.

These constants define the canonical event type strings used throughout
the core. Components publish events using these types, and subscribers
filter on them.
"""

from __future__ import annotations


class EventType:
    """Namespace for event type string constants."""

    # Device events
    DEVICE_CONNECTED = "device.connected"
    DEVICE_DISCONNECTED = "device.disconnected"
    DEVICE_ERROR = "device.error"
    DEVICE_REMOVED = "device.removed"

    # Signing events
    SIGNING_COMPLETED = "signing.completed"
    SIGNING_FAILED = "signing.failed"
    SIGNING_CANCELLED = "signing.cancelled"

    # System events
    SYSTEM_SCAN_COMPLETE = "system.scan_complete"
