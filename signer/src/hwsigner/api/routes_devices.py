"""Device routes: list, get, scan, connect, disconnect, accounts."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from hwsigner.accounts.paths import PathRange
from hwsigner.api.deps import get_signer
from hwsigner.models import Account, ConnectionStatus, Device
from hwsigner.signer import HardwareSigner

router = APIRouter(prefix="/devices", tags=["devices"])


# ---------- Request/Response models ----------


class DeviceList(BaseModel):
    items: list[Device]
    total: int


class AccountList(BaseModel):
    device_id: str
    items: list[Account]


class LoadAccountsRequest(BaseModel):
    # Either a preset name ("ethereum", "bitcoin_native_segwit", ...) or a
    # literal base path like "m/44'/60'/0'/0".
    base_path: Optional[str] = None
    start: int = Field(0, ge=0)
    count: Optional[int] = Field(None, ge=1)


# ---------- Routes ----------


@router.get("", response_model=DeviceList)
async def list_devices(
    status: Optional[ConnectionStatus] = Query(None),
    signer: HardwareSigner = Depends(get_signer),
):
    """List known devices, optionally filtered by connection status."""
    devices = signer.list_devices()
    if status is not None:
        devices = [d for d in devices if d.connection_status is status]
    return DeviceList(items=devices, total=len(devices))


@router.post("/scan", response_model=DeviceList)
async def scan_devices(signer: HardwareSigner = Depends(get_signer)):
    """Scan every enabled transport and return the merged device list."""
    devices = await signer.scan()
    return DeviceList(items=devices, total=len(devices))


@router.get("/{device_id}", response_model=Device)
async def get_device(device_id: str, signer: HardwareSigner = Depends(get_signer)):
    return signer.get_device(device_id)


@router.post("/{device_id}/connect", response_model=Device)
async def connect_device(device_id: str, signer: HardwareSigner = Depends(get_signer)):
    """Open a session. Blocks until the device answers or the connect times out."""
    return await signer.connect(device_id)


@router.post("/{device_id}/disconnect", response_model=Device)
async def disconnect_device(device_id: str, signer: HardwareSigner = Depends(get_signer)):
    await signer.disconnect(device_id)
    return signer.get_device(device_id)


@router.post("/{device_id}/accounts", response_model=AccountList)
async def load_accounts(
    device_id: str,
    body: LoadAccountsRequest,
    signer: HardwareSigner = Depends(get_signer),
):
    """Derive a page of accounts from a connected, unlocked device."""
    default = signer.default_range()
    path_range = PathRange(
        base_path=body.base_path or default.base_path,
        start=body.start,
        count=body.count or default.count,
    )
    accounts = await signer.load_accounts(device_id, path_range)
    return AccountList(device_id=device_id, items=accounts)


@router.get("/{device_id}/accounts", response_model=AccountList)
async def cached_accounts(device_id: str, signer: HardwareSigner = Depends(get_signer)):
    """Accounts already derived in the device's current session."""
    signer.get_device(device_id)
    return AccountList(device_id=device_id, items=signer.accounts.cached_accounts(device_id))
