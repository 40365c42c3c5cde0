"""System routes: health."""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from hwsigner import __version__
from hwsigner.api.deps import get_signer
from hwsigner.models import ConnectionStatus, RequestStatus
from hwsigner.signer import HardwareSigner

router = APIRouter(prefix="/system", tags=["system"])


class HealthResponse(BaseModel):
    version: str
    name: str
    uptime_seconds: float
    transports: list[str]
    device_count: int
    connected_count: int
    pending_requests: int
    latest_seq: int
    journal_enabled: bool


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, signer: HardwareSigner = Depends(get_signer)):
    devices = signer.list_devices()
    return HealthResponse(
        version=__version__,
        name=signer.settings.signer.name,
        uptime_seconds=round(time.time() - request.app.state.start_time, 1),
        transports=[m.value for m in signer.connections.methods],
        device_count=len(devices),
        connected_count=sum(1 for d in devices if d.connection_status is ConnectionStatus.CONNECTED),
        pending_requests=len(signer.list_requests(status=RequestStatus.PENDING)),
        latest_seq=signer.notifier.latest_seq,
        journal_enabled=signer.journal is not None,
    )
