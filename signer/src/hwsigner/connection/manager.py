"""Connection manager: device scanning and connection lifecycle.

The manager owns at most one active session per device and is the only
component that writes device status into the registry.

State machine per device::

    disconnected -> connecting -> connected -> disconnected

Lock state (locked / unlocked / unknown) is orthogonal and only meaningful
while connected. A device that reports a PIN lock on connect ends up
``disconnected`` + ``locked``; the user unlocks it out of band and retries.

Other components learn about session boundaries through listeners
registered with ``on_session_start`` / ``on_session_end``. End listeners
run *before* the transport handle is closed so that queued and in-flight
work for the device can be cancelled first. A connect that arrives while a
teardown is still running waits for it, so the old handle is closed and
``device.disconnected`` is published before the next session opens.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Iterable

from hwsigner.connection.channel import DeviceChannel
from hwsigner.devices.registry import DeviceRegistry
from hwsigner.errors import (
    AlreadyConnecting,
    DeviceLocked,
    DeviceNotReady,
    HardwareSignerError,
    ScanInProgress,
    TransportError,
)
from hwsigner.events.notifier import EventNotifier
from hwsigner.events.types import EventType
from hwsigner.models import ConnectionMethod, ConnectionStatus, Device, LockStatus, utcnow
from hwsigner.transport.base import TransportAdapter

logger = logging.getLogger(__name__)

# (device_id, session_id)
SessionListener = Callable[[str, int], Awaitable[None]]


class ConnectionManager:
    """Scans for devices and manages one session per device.

    Parameters
    ----------
    registry:
        Device registry to merge scan results into and to write status to.
    notifier:
        Event notifier for device lifecycle events.
    adapters:
        One transport adapter per enabled connection method.
    connect_timeout:
        Seconds to wait for ``adapter.open`` before failing the connect.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        notifier: EventNotifier,
        adapters: Iterable[TransportAdapter],
        connect_timeout: float = 30.0,
    ) -> None:
        self._registry = registry
        self._notifier = notifier
        self._adapters: dict[ConnectionMethod, TransportAdapter] = {a.method: a for a in adapters}
        self._connect_timeout = connect_timeout
        self._channels: dict[str, DeviceChannel] = {}
        self._connecting: set[str] = set()
        # Pending session teardowns; set once device.disconnected is published.
        self._teardowns: dict[str, asyncio.Event] = {}
        self._scanning = False
        self._sessions = itertools.count(1)
        self._start_listeners: list[SessionListener] = []
        self._end_listeners: list[SessionListener] = []
        self._background: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Listeners and queries
    # ------------------------------------------------------------------

    def on_session_start(self, listener: SessionListener) -> None:
        self._start_listeners.append(listener)

    def on_session_end(self, listener: SessionListener) -> None:
        self._end_listeners.append(listener)

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    @property
    def methods(self) -> list[ConnectionMethod]:
        return list(self._adapters)

    def is_connecting(self, device_id: str) -> bool:
        return device_id in self._connecting

    def session_id(self, device_id: str) -> int | None:
        """Return the live session id for *device_id*, or ``None``."""
        channel = self._channels.get(device_id)
        if channel is None or not channel.connected:
            return None
        return channel.session_id

    def require_ready(self, device_id: str) -> tuple[Device, DeviceChannel]:
        """Return the device and its channel if it is connected and unlocked.

        Raises ``UnknownDevice`` or ``DeviceNotReady``.
        """
        device = self._registry.require_device(device_id)
        channel = self._channels.get(device_id)
        if channel is None or not channel.connected or not device.is_ready:
            raise DeviceNotReady(
                f"Device {device_id} is {device.connection_status.value}/"
                f"{device.lock_status.value}",
                device_id=device_id,
            )
        return device, channel

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    async def scan(self) -> list[Device]:
        """Run every adapter's scan and merge the results into the registry.

        Devices that are not re-observed are kept; removal needs an explicit
        ``handle_vanished``.
        """
        if self._scanning:
            raise ScanInProgress("Device scan already in progress")
        self._scanning = True
        try:
            adapters = list(self._adapters.values())
            results = await asyncio.gather(
                *(adapter.scan_all() for adapter in adapters), return_exceptions=True
            )
            observed = 0
            failures = 0
            for adapter, result in zip(adapters, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    failures += 1
                    logger.warning(
                        "Scan failed for %s transport: %s", adapter.method.value, result
                    )
                    continue
                for descriptor in result:
                    self._registry.upsert_device(descriptor)
                    observed += 1

            if adapters and failures == len(adapters):
                raise TransportError("Scan failed on every transport")

            devices = self._registry.list_devices()
            self._notifier.publish(
                EventType.SYSTEM_SCAN_COMPLETE,
                {"observed": observed, "known": len(devices), "failed_transports": failures},
            )
            logger.info("Scan complete: %d observed, %d known", observed, len(devices))
            return devices
        finally:
            self._scanning = False

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect(self, device_id: str) -> Device:
        """Open a session with *device_id*.

        Returns the device unchanged if it is already connected. If the
        previous session is still being torn down, waits for the teardown
        (including its ``device.disconnected`` event) before opening.
        """
        device = self._registry.require_device(device_id)
        if device_id in self._connecting:
            raise AlreadyConnecting(f"Connect already in flight for {device_id}", device_id=device_id)

        channel = self._channels.get(device_id)
        if channel is not None and channel.connected and device_id not in self._teardowns:
            return device

        self._connecting.add(device_id)
        try:
            teardown = self._teardowns.get(device_id)
            if teardown is not None:
                logger.debug("Connect to %s waiting for the previous session to close", device_id)
                await teardown.wait()
                device = self._registry.require_device(device_id)
                channel = self._channels.get(device_id)

            adapter = self._adapters.get(device.connection_method)
            if adapter is None:
                raise TransportError(
                    f"No transport enabled for {device.connection_method.value}",
                    device_id=device_id,
                )
            if channel is None or channel.adapter is not adapter:
                channel = DeviceChannel(device_id, adapter)
                self._channels[device_id] = channel

            self._registry.update_status(device_id, connection=ConnectionStatus.CONNECTING)
            async with channel.lock:
                try:
                    handle = await asyncio.wait_for(adapter.open(device_id), self._connect_timeout)
                except DeviceLocked as exc:
                    self._fail_connect(device_id, exc, LockStatus.LOCKED)
                    raise
                except TransportError as exc:
                    self._fail_connect(device_id, exc, LockStatus.UNKNOWN)
                    raise
                except asyncio.TimeoutError:
                    exc = TransportError(
                        f"Timed out after {self._connect_timeout:.0f}s opening {device_id}",
                        device_id=device_id,
                    )
                    self._fail_connect(device_id, exc, LockStatus.UNKNOWN)
                    raise exc from None
                except asyncio.CancelledError:
                    self._fail_connect(device_id, None, LockStatus.UNKNOWN)
                    raise
                except Exception as exc:
                    logger.exception("Transport raised unexpectedly opening %s", device_id)
                    wrapped = TransportError(str(exc) or type(exc).__name__, device_id=device_id)
                    self._fail_connect(device_id, wrapped, LockStatus.UNKNOWN)
                    raise wrapped from exc

                if device_id not in self._registry:
                    await adapter.close(handle)
                    raise TransportError(f"Device {device_id} vanished while connecting", device_id=device_id)

                if handle.lock_status is LockStatus.LOCKED:
                    await adapter.close(handle)
                    exc = DeviceLocked(f"{device_id} is PIN-locked", device_id=device_id)
                    self._fail_connect(device_id, exc, LockStatus.LOCKED)
                    raise exc

                channel.handle = handle
                channel.session_id = next(self._sessions)

            if handle.descriptor is not None:
                self._registry.upsert_device(handle.descriptor)
            device = self._registry.update_status(
                device_id,
                connection=ConnectionStatus.CONNECTED,
                lock=handle.lock_status,
                last_connected=utcnow(),
            )
        finally:
            self._connecting.discard(device_id)

        for listener in self._start_listeners:
            await listener(device_id, channel.session_id)

        logger.info("Connected %s (%s, session %d)", device_id, device.vendor.value, channel.session_id)
        self._notifier.publish(
            EventType.DEVICE_CONNECTED,
            {
                "device_id": device_id,
                "vendor": device.vendor.value,
                "lock_status": device.lock_status.value,
                "session_id": channel.session_id,
            },
            source_id=device_id,
        )
        return device

    def _fail_connect(
        self, device_id: str, exc: HardwareSignerError | None, lock: LockStatus
    ) -> None:
        if device_id in self._registry:
            self._registry.update_status(
                device_id, connection=ConnectionStatus.DISCONNECTED, lock=lock
            )
        if exc is None:
            return
        logger.info("Connect to %s failed: %s", device_id, exc.detail)
        self._notifier.publish(
            EventType.DEVICE_ERROR,
            {"device_id": device_id, "reason": exc.code, "detail": exc.detail},
            source_id=device_id,
        )

    # ------------------------------------------------------------------
    # Disconnect / vanish / lock
    # ------------------------------------------------------------------

    async def disconnect(self, device_id: str) -> None:
        """End the session with *device_id*. A no-op if it is not connected."""
        self._registry.require_device(device_id)
        if device_id in self._connecting:
            raise AlreadyConnecting(f"Connect in flight for {device_id}", device_id=device_id)
        channel = self._channels.get(device_id)
        if channel is None or not channel.connected:
            return
        await self._end_session(channel, LockStatus.UNKNOWN, reason="requested")

    async def handle_vanished(self, device_id: str) -> bool:
        """Tear down any session and remove the device from the registry.

        Returns ``False`` if the device was not known.
        """
        if device_id not in self._registry:
            return False
        channel = self._channels.pop(device_id, None)
        if channel is not None and channel.connected:
            await self._end_session(channel, LockStatus.UNKNOWN, reason="vanished")
        self._registry.remove_device(device_id)
        logger.info("Device %s vanished", device_id)
        self._notifier.publish(
            EventType.DEVICE_REMOVED, {"device_id": device_id}, source_id=device_id
        )
        return True

    def report_locked(self, device_id: str) -> None:
        """Record that a connected device locked itself mid-session.

        The device stops being ready immediately; the session is then torn
        down in the background, leaving it ``disconnected`` + ``locked``.
        """
        channel = self._channels.get(device_id)
        if channel is None or not channel.connected or device_id not in self._registry:
            return
        self._registry.update_status(device_id, lock=LockStatus.LOCKED)
        self._notifier.publish(
            EventType.DEVICE_ERROR,
            {"device_id": device_id, "reason": DeviceLocked.code, "detail": "Device locked mid-session"},
            source_id=device_id,
        )
        self._teardowns.setdefault(device_id, asyncio.Event())
        task = asyncio.create_task(self._end_session(channel, LockStatus.LOCKED, reason="locked"))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _end_session(self, channel: DeviceChannel, lock: LockStatus, reason: str) -> None:
        device_id = channel.device_id
        handle = channel.handle
        if handle is None:
            return
        # The caller that takes the handle owns the teardown; connect waits on it.
        done = self._teardowns.setdefault(device_id, asyncio.Event())
        session_id = channel.session_id
        channel.handle = None
        try:
            if device_id in self._registry:
                self._registry.update_status(
                    device_id, connection=ConnectionStatus.DISCONNECTED, lock=lock
                )

            for listener in self._end_listeners:
                await listener(device_id, session_id)

            async with channel.lock:
                try:
                    await channel.adapter.close(handle)
                except Exception as exc:
                    logger.warning("Closing transport for %s failed", device_id, exc_info=True)
                    self._notifier.publish(
                        EventType.DEVICE_ERROR,
                        {"device_id": device_id, "reason": TransportError.code, "detail": str(exc)},
                        source_id=device_id,
                    )

            logger.info("Disconnected %s (session %d, %s)", device_id, session_id, reason)
            self._notifier.publish(
                EventType.DEVICE_DISCONNECTED,
                {"device_id": device_id, "session_id": session_id, "reason": reason},
                source_id=device_id,
            )
        finally:
            if self._teardowns.get(device_id) is done:
                del self._teardowns[device_id]
            done.set()

    async def shutdown(self) -> None:
        """Disconnect every connected device."""
        for device_id, channel in list(self._channels.items()):
            if channel.connected:
                await self._end_session(channel, LockStatus.UNKNOWN, reason="shutdown")
        if self._background:
            await asyncio.wait(set(self._background))


