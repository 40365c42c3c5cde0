"""Per-device I/O channel.

A hardware device processes one command at a time, so every transport
operation for a device -- open, derive, sign, close -- runs while holding
that device's ``DeviceChannel.lock``. The channel also carries the open
session (adapter handle plus session id); ``handle is None`` means the
device has no live session.

The operation helpers below do not take the lock themselves; callers hold
``lock`` around them so that a check-then-act sequence (pick the next queued
request, mark it dispatched, sign) is atomic with respect to other I/O.
"""

from __future__ import annotations

import asyncio

from hwsigner.errors import DeviceDisconnected
from hwsigner.models import RequestType
from hwsigner.transport.base import AccountDescriptor, ConnectionHandle, TransportAdapter


class DeviceChannel:
    def __init__(self, device_id: str, adapter: TransportAdapter) -> None:
        self.device_id = device_id
        self.adapter = adapter
        self.lock = asyncio.Lock()
        self.handle: ConnectionHandle | None = None
        self.session_id = 0

    @property
    def connected(self) -> bool:
        return self.handle is not None

    def _require_handle(self) -> ConnectionHandle:
        if self.handle is None:
            raise DeviceDisconnected(
                f"Device {self.device_id} has no open session", device_id=self.device_id
            )
        return self.handle

    async def list_accounts(self, paths: list[str]) -> list[AccountDescriptor]:
        return await self.adapter.list_accounts(self._require_handle(), paths)

    async def sign(self, account_path: str, request_type: RequestType, payload: bytes) -> bytes:
        return await self.adapter.sign(self._require_handle(), account_path, request_type, payload)
