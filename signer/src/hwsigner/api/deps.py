"""FastAPI dependency injection providers."""
from __future__ import annotations

from fastapi import Request

from hwsigner.signer import HardwareSigner


async def get_signer(request: Request) -> HardwareSigner:
    """Return the HardwareSigner owned by the application.

    Created in the app lifespan. In tests, either pass a signer to
    ``create_app`` or override this dependency.
    """
    return request.app.state.signer
