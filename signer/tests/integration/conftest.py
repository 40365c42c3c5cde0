# signer/tests/integration/conftest.py
import time

import pytest
from fastapi.testclient import TestClient

from hwsigner.app import create_app
from hwsigner.config import EventsConfig, Settings, SigningConfig
from hwsigner.models import DeviceVendor
from hwsigner.signer import HardwareSigner
from hwsigner.transport.simulated import SimulatedTransport


@pytest.fixture
def api_transport() -> SimulatedTransport:
    t = SimulatedTransport()
    t.add_device("ledger-1", vendor=DeviceVendor.LEDGER, model="Nano X")
    t.add_device("trezor-1", vendor=DeviceVendor.TREZOR, model="Model T")
    return t


@pytest.fixture
def api_settings() -> Settings:
    return Settings(
        signing=SigningConfig(timeout_seconds=2.0),
        events=EventsConfig(journal_path=":memory:"),
    )


@pytest.fixture
def api_signer(api_settings, api_transport) -> HardwareSigner:
    return HardwareSigner(api_settings, adapters=[api_transport])


@pytest.fixture
def app(api_signer):
    """Create a FastAPI app around a signer with simulated devices."""
    return create_app(signer=api_signer)


@pytest.fixture
def client(app):
    """Create a TestClient; entering it runs the app lifespan."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def wait_for_status(client):
    """Poll GET /signing/{id} until the request leaves ``pending``."""

    def _wait(request_id: int, timeout: float = 3.0) -> dict:
        deadline = time.monotonic() + timeout
        while True:
            body = client.get(f"/signing/{request_id}").json()
            if body["status"] != "pending" or time.monotonic() > deadline:
                return body
            time.sleep(0.01)

    return _wait


@pytest.fixture
def connect_with_accounts(client):
    """Scan, connect *device_id* and load *count* accounts over HTTP."""

    def _connect(device_id: str = "ledger-1", count: int = 2) -> list[dict]:
        client.post("/devices/scan")
        assert client.post(f"/devices/{device_id}/connect").status_code == 200
        resp = client.post(f"/devices/{device_id}/accounts", json={"count": count})
        assert resp.status_code == 200
        return resp.json()["items"]

    return _connect
