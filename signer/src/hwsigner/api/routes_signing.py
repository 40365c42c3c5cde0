"""Signing routes: submit, list, status, cancel."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator

from hwsigner.api.deps import get_signer
from hwsigner.models import RequestStatus, RequestType, SigningRequest
from hwsigner.signer import HardwareSigner

router = APIRouter(prefix="/signing", tags=["signing"])


# ---------- Request/Response models ----------


class SubmitRequest(BaseModel):
    device_id: str
    account_path: str
    payload_hex: str
    summary: str = ""
    request_type: RequestType = RequestType.TRANSACTION

    @field_validator("payload_hex")
    @classmethod
    def validate_hex(cls, v: str) -> str:
        v = v.removeprefix("0x")
        if not v:
            raise ValueError("payload must not be empty")
        bytes.fromhex(v)
        return v


class SigningRequestView(BaseModel):
    id: int
    request_type: RequestType
    device_id: str
    account_path: str
    account_address: str
    summary: str
    payload_hex: str
    status: RequestStatus
    created_at: str
    dispatched_at: Optional[str] = None
    completed_at: Optional[str] = None
    signature_hex: Optional[str] = None
    error_reason: Optional[str] = None
    error_detail: Optional[str] = None


class SigningRequestList(BaseModel):
    items: list[SigningRequestView]
    total: int


def _view(request: SigningRequest) -> SigningRequestView:
    return SigningRequestView(
        id=request.id,
        request_type=request.request_type,
        device_id=request.device_id,
        account_path=request.account_path,
        account_address=request.account_address,
        summary=request.payload.summary,
        payload_hex=request.payload.data.hex(),
        status=request.status,
        created_at=request.created_at.isoformat(),
        dispatched_at=request.dispatched_at.isoformat() if request.dispatched_at else None,
        completed_at=request.completed_at.isoformat() if request.completed_at else None,
        signature_hex=request.signature.hex() if request.signature is not None else None,
        error_reason=request.error_reason.value if request.error_reason else None,
        error_detail=request.error_detail,
    )


# ---------- Routes ----------


@router.post("", response_model=SigningRequestView, status_code=202)
async def submit(body: SubmitRequest, signer: HardwareSigner = Depends(get_signer)):
    """Queue a signing request. Poll ``GET /signing/{id}`` or watch the event stream."""
    request_id = signer.submit(
        body.device_id,
        body.account_path,
        bytes.fromhex(body.payload_hex),
        request_type=body.request_type,
        summary=body.summary,
    )
    return _view(signer.get_status(request_id))


@router.get("", response_model=SigningRequestList)
async def list_requests(
    device_id: Optional[str] = Query(None),
    status: Optional[RequestStatus] = Query(None),
    signer: HardwareSigner = Depends(get_signer),
):
    items = [_view(r) for r in signer.list_requests(device_id, status)]
    return SigningRequestList(items=items, total=len(items))


@router.get("/{request_id}", response_model=SigningRequestView)
async def get_status(request_id: int, signer: HardwareSigner = Depends(get_signer)):
    return _view(signer.get_status(request_id))


@router.post("/{request_id}/cancel", response_model=SigningRequestView)
async def cancel(request_id: int, signer: HardwareSigner = Depends(get_signer)):
    """Cancel a request that has not reached the device yet."""
    return _view(signer.cancel(request_id))
