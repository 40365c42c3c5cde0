"""Transport adapter abstraction.

The core never speaks USB, Bluetooth or a Wi-Fi bridge protocol itself.
Each connection method is served by a ``TransportAdapter`` implementation
that scans, opens sessions, lists accounts and signs. Vendor differences
(Ledger, Trezor, GridPlus) are dispatched inside the adapter on the
device's vendor tag; the core logic is identical across vendors.

Adapters report failures by raising ``TransportError``, ``DeviceLocked`` or
``UserRejected`` from ``hwsigner.errors``. Any other exception is treated by
the core as a transport failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from hwsigner.devices.registry import DeviceDescriptor
from hwsigner.models import ConnectionMethod, LockStatus, RequestType


@dataclass(frozen=True)
class AccountDescriptor:
    """A single account as reported by the device."""

    path: str
    index: int
    address: str
    public_key: str | None = None


@dataclass
class ConnectionHandle:
    """An open session with one device.

    ``session`` is adapter-private state (a transport object, an app
    instance) that the core passes back untouched.
    """

    device_id: str
    lock_status: LockStatus = LockStatus.UNLOCKED
    descriptor: DeviceDescriptor | None = None
    session: Any = field(default=None, repr=False)


class TransportAdapter(ABC):
    """Abstract interface for one connection method.

    Implementations must be safe to call for different devices
    concurrently. The core guarantees it never issues two operations for
    the same device at the same time.
    """

    method: ConnectionMethod = ConnectionMethod.OTHER

    @abstractmethod
    async def scan_all(self) -> list[DeviceDescriptor]:
        """Return descriptors for every device currently reachable."""

    @abstractmethod
    async def open(self, device_id: str) -> ConnectionHandle:
        """Open a session with *device_id*.

        Raises
        ------
        TransportError
            The device could not be reached.
        DeviceLocked
            The device is PIN-locked. Adapters must release any partially
            opened transport before raising.
        """

    @abstractmethod
    async def close(self, handle: ConnectionHandle) -> None:
        """Release the session. Must tolerate an already-dead transport."""

    @abstractmethod
    async def list_accounts(
        self, handle: ConnectionHandle, paths: list[str]
    ) -> list[AccountDescriptor]:
        """Derive the accounts at *paths* on the device."""

    @abstractmethod
    async def sign(
        self,
        handle: ConnectionHandle,
        account_path: str,
        request_type: RequestType,
        payload: bytes,
    ) -> bytes:
        """Sign *payload* with the key at *account_path* and return the signature.

        Raises
        ------
        UserRejected
            The user declined on the device.
        TransportError
            The exchange failed.
        """
