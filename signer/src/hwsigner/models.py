"""Pydantic domain models for the hardware signer core.

These models define the data exchanged with consumers: devices, derived
accounts, signing requests and events. Components hand out copies of these
models so that callers can never mutate core state behind the owning
component's back.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DeviceVendor(str, Enum):
    LEDGER = "ledger"
    TREZOR = "trezor"
    GRIDPLUS = "gridplus"
    OTHER = "other"


class ConnectionMethod(str, Enum):
    USB = "usb"
    BLUETOOTH = "bluetooth"
    WIFI = "wifi"
    OTHER = "other"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class LockStatus(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    UNKNOWN = "unknown"


class RequestType(str, Enum):
    MESSAGE = "message"
    TRANSACTION = "transaction"


class RequestStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class ErrorReason(str, Enum):
    USER_REJECTED = "user_rejected"
    TRANSPORT_ERROR = "transport_error"
    TIMEOUT = "timeout"
    DEVICE_DISCONNECTED = "device_disconnected"
    DEVICE_LOCKED = "device_locked"
    CANCELLED_BY_CALLER = "cancelled_by_caller"


# ---------------------------------------------------------------------------
# Domain models
# ---------------------------------------------------------------------------

class Device(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    vendor: DeviceVendor = DeviceVendor.OTHER
    model: str | None = None
    firmware_version: str | None = None
    connection_method: ConnectionMethod = ConnectionMethod.OTHER
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    lock_status: LockStatus = LockStatus.UNKNOWN
    last_connected: datetime | None = None
    supported_apps: list[str] = Field(default_factory=list)
    serial_number: str | None = None
    current_app: str | None = None

    @property
    def is_ready(self) -> bool:
        """Connected and unlocked -- the only state that allows device I/O."""
        return (
            self.connection_status is ConnectionStatus.CONNECTED
            and self.lock_status is LockStatus.UNLOCKED
        )


class Account(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    device_id: str
    path: str
    index: int
    address: str
    public_key: str | None = None
    balance: str | None = None
    session_id: int = 0


class SigningPayload(BaseModel):
    """Opaque bytes to sign plus a summary the user can match on-screen."""

    data: bytes
    summary: str = ""


class SigningRequest(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_type: RequestType
    payload: SigningPayload
    device_id: str
    account_path: str
    account_address: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    dispatched_at: datetime | None = None
    completed_at: datetime | None = None
    signature: bytes | None = None
    error_reason: ErrorReason | None = None
    error_detail: str | None = None

    @property
    def dispatched(self) -> bool:
        return self.dispatched_at is not None


class Event(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    seq: int
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    source_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
