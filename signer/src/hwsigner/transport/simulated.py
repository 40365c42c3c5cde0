"""In-memory transport adapter emulating hardware signing devices.

FOR TESTING AND DEMOS ONLY. Keys are derived in process memory from a
per-device seed, which defeats the purpose of a hardware wallet. The
adapter does produce real secp256k1 ECDSA signatures (64-byte r || s), so
results can be verified end to end with ``verify()``.

Beyond signing, the adapter exposes knobs tests use to reproduce hardware
failure modes: PIN lock, on-screen rejection, unplugging, slow confirmation,
and a gate that holds a signing exchange open until released. It also
records per-device concurrency so callers can assert that no two
operations ever overlap on one device.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from hwsigner.devices.registry import DeviceDescriptor
from hwsigner.errors import DeviceLocked, TransportError, UserRejected
from hwsigner.models import ConnectionMethod, DeviceVendor, LockStatus, RequestType
from hwsigner.transport.base import AccountDescriptor, ConnectionHandle, TransportAdapter

logger = logging.getLogger(__name__)

_CURVE = ec.SECP256K1()
_CURVE_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)


def _derive_private_key(seed: bytes, path: str) -> ec.EllipticCurvePrivateKey:
    value = int.from_bytes(hashlib.sha256(seed + path.encode()).digest(), "big") % _CURVE_ORDER
    return ec.derive_private_key(value or 1, _CURVE)


def _public_key_hex(key: ec.EllipticCurvePrivateKey) -> str:
    numbers = key.public_key().public_numbers()
    return (numbers.x.to_bytes(32, "big") + numbers.y.to_bytes(32, "big")).hex()


# ---------------------------------------------------------------------------
# Simulated device state
# ---------------------------------------------------------------------------

@dataclass
class SimulatedDevice:
    """Mutable state of one emulated device.

    Attributes:
        descriptor: What a scan reports for the device.
        seed: Secret used to derive account keys.
        locked: Whether ``open`` reports a PIN lock.
        reject: Whether the next signing prompts are declined on-screen.
        present: ``False`` once the device has been unplugged.
        open_delay: Seconds ``open`` takes.
        sign_delay: Seconds the user takes to confirm a signature.
        derive_delay: Seconds an account derivation takes.
        fail_open: Whether ``open`` fails with a transport error.
    """

    descriptor: DeviceDescriptor
    seed: bytes
    locked: bool = False
    reject: bool = False
    present: bool = True
    open_delay: float = 0.0
    sign_delay: float = 0.0
    derive_delay: float = 0.0
    fail_open: bool = False
    gate: asyncio.Event | None = field(default=None, repr=False)
    sign_started: asyncio.Event = field(default_factory=asyncio.Event, repr=False)


class SimulatedTransport(TransportAdapter):
    """Transport adapter backed by ``SimulatedDevice`` records.

    Parameters
    ----------
    method:
        The connection method this adapter pretends to serve.
    """

    def __init__(self, method: ConnectionMethod = ConnectionMethod.USB) -> None:
        self.method = method
        self._devices: dict[str, SimulatedDevice] = {}
        self._active: dict[str, int] = {}
        self.max_concurrency: dict[str, int] = {}
        self.sign_calls: list[tuple[str, str, bytes]] = []
        self.open_calls: list[str] = []
        self.derive_calls: list[tuple[str, list[str]]] = []
        self.closed_handles: list[str] = []

    # ------------------------------------------------------------------
    # Device fixtures
    # ------------------------------------------------------------------

    def add_device(
        self,
        device_id: str,
        vendor: DeviceVendor = DeviceVendor.LEDGER,
        model: str | None = None,
        firmware_version: str = "2.1.0",
        supported_apps: tuple[str, ...] = ("Ethereum", "Bitcoin"),
        **state: object,
    ) -> SimulatedDevice:
        descriptor = DeviceDescriptor(
            device_id=device_id,
            vendor=vendor,
            model=model or vendor.value.title(),
            firmware_version=firmware_version,
            connection_method=self.method,
            supported_apps=supported_apps,
            serial_number=hashlib.sha256(device_id.encode()).hexdigest()[:12],
        )
        device = SimulatedDevice(
            descriptor=descriptor,
            seed=hashlib.sha256(f"hwsigner-sim:{device_id}".encode()).digest(),
            **state,  # type: ignore[arg-type]
        )
        self._devices[device_id] = device
        return device

    def device(self, device_id: str) -> SimulatedDevice:
        return self._devices[device_id]

    def unplug(self, device_id: str) -> None:
        self._devices[device_id].present = False

    def plug(self, device_id: str) -> None:
        self._devices[device_id].present = True

    def hold(self, device_id: str) -> None:
        """Keep signing exchanges on *device_id* open until ``release``."""
        self._devices[device_id].gate = asyncio.Event()

    def release(self, device_id: str) -> None:
        gate = self._devices[device_id].gate
        if gate is not None:
            gate.set()

    async def wait_signing(self, device_id: str, timeout: float = 2.0) -> None:
        """Wait until a signing exchange has started on *device_id*."""
        started = self._devices[device_id].sign_started
        await asyncio.wait_for(started.wait(), timeout)
        started.clear()

    def verify(self, device_id: str, path: str, payload: bytes, signature: bytes) -> bool:
        key = _derive_private_key(self._devices[device_id].seed, path)
        der = encode_dss_signature(
            int.from_bytes(signature[:32], "big"),
            int.from_bytes(signature[32:], "big"),
        )
        try:
            key.public_key().verify(der, payload, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature:
            return False
        return True

    # ------------------------------------------------------------------
    # Instrumentation
    # ------------------------------------------------------------------

    def _enter(self, device_id: str) -> None:
        active = self._active.get(device_id, 0) + 1
        self._active[device_id] = active
        self.max_concurrency[device_id] = max(self.max_concurrency.get(device_id, 0), active)

    def _exit(self, device_id: str) -> None:
        self._active[device_id] -= 1

    def _require_present(self, device_id: str) -> SimulatedDevice:
        device = self._devices.get(device_id)
        if device is None or not device.present:
            raise TransportError(f"Device {device_id} is not reachable", device_id=device_id)
        return device

    # ------------------------------------------------------------------
    # TransportAdapter
    # ------------------------------------------------------------------

    async def scan_all(self) -> list[DeviceDescriptor]:
        return [d.descriptor for d in self._devices.values() if d.present]

    async def open(self, device_id: str) -> ConnectionHandle:
        self.open_calls.append(device_id)
        device = self._require_present(device_id)
        self._enter(device_id)
        try:
            if device.open_delay:
                await asyncio.sleep(device.open_delay)
            if device.fail_open:
                raise TransportError(f"USB claim failed for {device_id}", device_id=device_id)
            if device.locked:
                raise DeviceLocked(f"{device_id} is PIN-locked", device_id=device_id)
        finally:
            self._exit(device_id)
        return ConnectionHandle(
            device_id=device_id,
            lock_status=LockStatus.UNLOCKED,
            descriptor=device.descriptor,
            session={"seed": device.seed},
        )

    async def close(self, handle: ConnectionHandle) -> None:
        self.closed_handles.append(handle.device_id)

    async def list_accounts(
        self, handle: ConnectionHandle, paths: list[str]
    ) -> list[AccountDescriptor]:
        device = self._require_present(handle.device_id)
        self.derive_calls.append((handle.device_id, list(paths)))
        self._enter(handle.device_id)
        try:
            accounts = []
            for path in paths:
                key = _derive_private_key(device.seed, path)
                public_key = _public_key_hex(key)
                address = "0x" + hashlib.sha256(bytes.fromhex(public_key)).hexdigest()[-40:]
                index = int(path.rsplit("/", 1)[-1].rstrip("'"))
                accounts.append(
                    AccountDescriptor(path=path, index=index, address=address, public_key=public_key)
                )
            await asyncio.sleep(device.derive_delay)
            return accounts
        finally:
            self._exit(handle.device_id)

    async def sign(
        self,
        handle: ConnectionHandle,
        account_path: str,
        request_type: RequestType,
        payload: bytes,
    ) -> bytes:
        device = self._require_present(handle.device_id)
        self._enter(handle.device_id)
        try:
            self.sign_calls.append((handle.device_id, account_path, payload))
            device.sign_started.set()
            if device.gate is not None:
                await device.gate.wait()
            if device.sign_delay:
                await asyncio.sleep(device.sign_delay)
            if not device.present:
                raise TransportError(f"{handle.device_id} unplugged mid-exchange")
            if device.locked:
                raise DeviceLocked(f"{handle.device_id} locked during signing")
            if device.reject:
                raise UserRejected(f"Signature declined on {handle.device_id}")

            key = _derive_private_key(device.seed, account_path)
            r, s = decode_dss_signature(key.sign(payload, ec.ECDSA(hashes.SHA256())))
            logger.debug(
                "Simulated %s signature on %s (%d bytes)",
                request_type.value, handle.device_id, len(payload),
            )
            return r.to_bytes(32, "big") + s.to_bytes(32, "big")
        finally:
            self._exit(handle.device_id)


# ---------------------------------------------------------------------------
# Demo fleet
# ---------------------------------------------------------------------------

_DEMO_FLEET: dict[ConnectionMethod, list[tuple[str, DeviceVendor, str]]] = {
    ConnectionMethod.USB: [
        ("sim-ledger-nanox", DeviceVendor.LEDGER, "Nano X"),
        ("sim-trezor-t", DeviceVendor.TREZOR, "Model T"),
    ],
    ConnectionMethod.BLUETOOTH: [
        ("sim-ledger-stax", DeviceVendor.LEDGER, "Stax"),
    ],
    ConnectionMethod.WIFI: [
        ("sim-gridplus-lattice", DeviceVendor.GRIDPLUS, "Lattice1"),
    ],
}


def build_demo_transports(methods: list[ConnectionMethod]) -> list[SimulatedTransport]:
    """One simulated transport per method, pre-populated with demo devices."""
    transports = []
    for method in methods:
        transport = SimulatedTransport(method)
        for device_id, vendor, model in _DEMO_FLEET.get(method, []):
            transport.add_device(device_id, vendor=vendor, model=model)
        transports.append(transport)
    return transports
