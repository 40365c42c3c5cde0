"""Shared test fixtures for hwsigner tests."""

import pathlib

import pytest
import pytest_asyncio

from hwsigner.accounts.paths import PathRange
from hwsigner.accounts.service import AccountDerivationService
from hwsigner.config import SigningConfig, _default_derivation_paths
from hwsigner.connection.manager import ConnectionManager
from hwsigner.devices.registry import DeviceRegistry
from hwsigner.events.notifier import EventNotifier
from hwsigner.models import DeviceVendor
from hwsigner.signing.orchestrator import SigningOrchestrator
from hwsigner.transport.simulated import SimulatedTransport

REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
SIGNER_ROOT = REPO_ROOT / "signer"

ETH_BASE = "m/44'/60'/0'/0"
ETH_0 = f"{ETH_BASE}/0"
ETH_1 = f"{ETH_BASE}/1"


@pytest.fixture
def signer_root() -> pathlib.Path:
    return SIGNER_ROOT


@pytest.fixture
def transport() -> SimulatedTransport:
    """A USB transport with a Ledger and a Trezor plugged in."""
    t = SimulatedTransport()
    t.add_device("ledger-1", vendor=DeviceVendor.LEDGER, model="Nano X")
    t.add_device("trezor-1", vendor=DeviceVendor.TREZOR, model="Model T")
    return t


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry()


@pytest.fixture
def notifier() -> EventNotifier:
    return EventNotifier(max_queue=100)


@pytest_asyncio.fixture
async def manager(registry, notifier, transport):
    cm = ConnectionManager(registry, notifier, [transport], connect_timeout=1.0)
    yield cm
    await cm.shutdown()


@pytest.fixture
def accounts(manager) -> AccountDerivationService:
    return AccountDerivationService(
        manager, max_page_size=20, presets=_default_derivation_paths()
    )


@pytest_asyncio.fixture
async def orchestrator(manager, accounts, notifier):
    orch = SigningOrchestrator(manager, accounts, notifier, SigningConfig(timeout_seconds=2.0))
    yield orch
    await orch.close()


@pytest.fixture
def ready(manager, accounts):
    """Return a coroutine function that scans, connects and loads two accounts."""

    async def _ready(device_id: str = "ledger-1", count: int = 2):
        if device_id not in manager.registry:
            await manager.scan()
        await manager.connect(device_id)
        return await accounts.load_accounts(device_id, PathRange(ETH_BASE, 0, count))

    return _ready
