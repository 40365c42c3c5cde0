"""Device registry: the set of discovered devices and their last-known status.

The registry is pure in-memory data plus merge rules. Descriptor fields
reported by a scan are merged into existing entries; status fields are only
ever written through ``update_status``, which the Connection Manager owns.
All reads return copies so snapshots stay stable while a scan is writing.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime

from hwsigner.errors import UnknownDevice
from hwsigner.models import (
    ConnectionMethod,
    ConnectionStatus,
    Device,
    DeviceVendor,
    LockStatus,
)


# ---------------------------------------------------------------------------
# Descriptor input
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeviceDescriptor:
    """Transport-reported identity and metadata for a device.

    All fields except ``device_id`` are optional -- a transport reports
    whatever it can observe, and the registry keeps what it already knew
    for anything left as ``None``.
    """

    device_id: str
    vendor: DeviceVendor | None = None
    model: str | None = None
    firmware_version: str | None = None
    connection_method: ConnectionMethod | None = None
    supported_apps: tuple[str, ...] | None = None
    serial_number: str | None = None
    current_app: str | None = None

    def merge_fields(self) -> dict[str, object]:
        """Return the descriptor fields that carry an observed value."""
        observed: dict[str, object] = {}
        for name in (
            "vendor",
            "model",
            "firmware_version",
            "connection_method",
            "serial_number",
            "current_app",
        ):
            value = getattr(self, name)
            if value is not None:
                observed[name] = value
        if self.supported_apps is not None:
            observed["supported_apps"] = list(self.supported_apps)
        return observed


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class DeviceRegistry:
    """Thread-safe map of device id to ``Device``."""

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self._lock = threading.RLock()

    def upsert_device(self, descriptor: DeviceDescriptor) -> Device:
        """Insert a new device or merge observed fields into the known entry."""
        observed = descriptor.merge_fields()
        with self._lock:
            existing = self._devices.get(descriptor.device_id)
            if existing is None:
                device = Device(id=descriptor.device_id, **observed)
            else:
                device = existing.model_copy(update=observed)
            self._devices[descriptor.device_id] = device
            return device.model_copy(deep=True)

    def remove_device(self, device_id: str) -> bool:
        """Remove a device. Returns ``False`` if it was not present."""
        with self._lock:
            return self._devices.pop(device_id, None) is not None

    def get_device(self, device_id: str) -> Device | None:
        with self._lock:
            device = self._devices.get(device_id)
            return device.model_copy(deep=True) if device is not None else None

    def require_device(self, device_id: str) -> Device:
        device = self.get_device(device_id)
        if device is None:
            raise UnknownDevice(f"Unknown device {device_id!r}", device_id=device_id)
        return device

    def list_devices(self) -> list[Device]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._devices.values()]

    def update_status(
        self,
        device_id: str,
        *,
        connection: ConnectionStatus | None = None,
        lock: LockStatus | None = None,
        last_connected: datetime | None = None,
    ) -> Device:
        """Write status fields. Reserved for the Connection Manager."""
        update: dict[str, object] = {}
        if connection is not None:
            update["connection_status"] = connection
        if lock is not None:
            update["lock_status"] = lock
        if last_connected is not None:
            update["last_connected"] = last_connected
        with self._lock:
            existing = self._devices.get(device_id)
            if existing is None:
                raise UnknownDevice(f"Unknown device {device_id!r}", device_id=device_id)
            device = existing.model_copy(update=update)
            self._devices[device_id] = device
            return device.model_copy(deep=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def __contains__(self, device_id: object) -> bool:
        with self._lock:
            return device_id in self._devices
