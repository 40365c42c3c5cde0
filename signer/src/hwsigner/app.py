"""FastAPI application factory for the hardware signer."""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hwsigner import __version__
from hwsigner.api.routes_devices import router as devices_router
from hwsigner.api.routes_signing import router as signing_router
from hwsigner.api.routes_system import router as system_router
from hwsigner.api.ws import router as ws_router
from hwsigner.config import Settings
from hwsigner.errors import (
    AlreadyConnecting,
    AlreadyDispatched,
    DeviceDisconnected,
    DeviceLocked,
    DeviceNotReady,
    HardwareSignerError,
    InvalidPathRange,
    RequestNotPending,
    ScanInProgress,
    SigningTimeout,
    TransportError,
    UnknownDevice,
    UnknownRequest,
    UserRejected,
)
from hwsigner.signer import HardwareSigner

_STATUS_CODES: dict[type[HardwareSignerError], int] = {
    UnknownDevice: 404,
    UnknownRequest: 404,
    DeviceNotReady: 409,
    DeviceLocked: 409,
    DeviceDisconnected: 409,
    UserRejected: 409,
    AlreadyConnecting: 409,
    AlreadyDispatched: 409,
    RequestNotPending: 409,
    ScanInProgress: 409,
    InvalidPathRange: 422,
    TransportError: 502,
    SigningTimeout: 504,
}


def status_code_for(exc: HardwareSignerError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_CODES:
            return _STATUS_CODES[cls]
    return 500


async def _handle_signer_error(request: Request, exc: HardwareSignerError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code_for(exc),
        content={
            "detail": exc.detail,
            "code": exc.code,
            "retryable": exc.retryable,
            "device_id": exc.device_id,
        },
    )


def create_app(
    settings: Settings | None = None, signer: HardwareSigner | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Loaded settings. Ignored when *signer* is given.
        signer: A pre-built signer (tests inject one with simulated
            transports). The application starts and closes it.

    Returns:
        Configured FastAPI application instance.
    """
    start_time = time.time()
    if signer is None:
        signer = HardwareSigner(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await signer.start()
        try:
            yield
        finally:
            await signer.close()

    app = FastAPI(
        title="Hardware Signer",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.start_time = start_time
    app.state.signer = signer

    app.add_exception_handler(HardwareSignerError, _handle_signer_error)

    app.include_router(system_router)
    app.include_router(devices_router)
    app.include_router(signing_router)
    app.include_router(ws_router)

    return app
