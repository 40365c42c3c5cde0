"""Tests for the in-memory simulated transport."""

import asyncio

import pytest

from hwsigner.errors import DeviceLocked, TransportError, UserRejected
from hwsigner.models import ConnectionMethod, DeviceVendor, LockStatus, RequestType
from hwsigner.transport.simulated import SimulatedTransport, build_demo_transports

PATH = "m/44'/60'/0'/0/0"


@pytest.fixture
def transport() -> SimulatedTransport:
    t = SimulatedTransport()
    t.add_device("ledger-1")
    return t


class TestScanAndOpen:
    @pytest.mark.asyncio
    async def test_scan_reports_present_devices(self, transport) -> None:
        transport.add_device("trezor-1", vendor=DeviceVendor.TREZOR)
        transport.unplug("trezor-1")

        found = await transport.scan_all()

        assert [d.device_id for d in found] == ["ledger-1"]
        assert found[0].connection_method is ConnectionMethod.USB
        assert found[0].model == "Ledger"

    @pytest.mark.asyncio
    async def test_open(self, transport) -> None:
        handle = await transport.open("ledger-1")
        assert handle.lock_status is LockStatus.UNLOCKED
        assert handle.descriptor.device_id == "ledger-1"

    @pytest.mark.asyncio
    async def test_open_locked(self, transport) -> None:
        transport.device("ledger-1").locked = True
        with pytest.raises(DeviceLocked):
            await transport.open("ledger-1")

    @pytest.mark.asyncio
    async def test_open_unplugged(self, transport) -> None:
        transport.unplug("ledger-1")
        with pytest.raises(TransportError):
            await transport.open("ledger-1")

    @pytest.mark.asyncio
    async def test_open_unknown(self, transport) -> None:
        with pytest.raises(TransportError):
            await transport.open("nope")


class TestAccountsAndSigning:
    @pytest.mark.asyncio
    async def test_list_accounts_is_deterministic(self, transport) -> None:
        handle = await transport.open("ledger-1")
        first = await transport.list_accounts(handle, [PATH])
        second = await transport.list_accounts(handle, [PATH])

        assert first == second
        assert first[0].index == 0
        assert len(first[0].public_key) == 128

    @pytest.mark.asyncio
    async def test_signature_verifies(self, transport) -> None:
        handle = await transport.open("ledger-1")

        sig = await transport.sign(handle, PATH, RequestType.TRANSACTION, b"payload")

        assert len(sig) == 64
        assert transport.verify("ledger-1", PATH, b"payload", sig)
        assert not transport.verify("ledger-1", PATH, b"other", sig)
        assert not transport.verify("ledger-1", "m/44'/60'/0'/0/1", b"payload", sig)

    @pytest.mark.asyncio
    async def test_user_rejects(self, transport) -> None:
        handle = await transport.open("ledger-1")
        transport.device("ledger-1").reject = True
        with pytest.raises(UserRejected):
            await transport.sign(handle, PATH, RequestType.MESSAGE, b"x")

    @pytest.mark.asyncio
    async def test_hold_and_release(self, transport) -> None:
        handle = await transport.open("ledger-1")
        transport.hold("ledger-1")

        task = asyncio.create_task(transport.sign(handle, PATH, RequestType.MESSAGE, b"x"))
        await transport.wait_signing("ledger-1")
        assert not task.done()

        transport.release("ledger-1")
        assert len(await asyncio.wait_for(task, timeout=1)) == 64

    @pytest.mark.asyncio
    async def test_concurrency_is_recorded(self, transport) -> None:
        handle = await transport.open("ledger-1")
        transport.device("ledger-1").sign_delay = 0.01

        await asyncio.gather(
            transport.sign(handle, PATH, RequestType.MESSAGE, b"a"),
            transport.sign(handle, PATH, RequestType.MESSAGE, b"b"),
        )

        assert transport.max_concurrency["ledger-1"] == 2


class TestDemoFleet:
    def test_demo_transports(self) -> None:
        transports = build_demo_transports([ConnectionMethod.USB, ConnectionMethod.WIFI])

        assert [t.method for t in transports] == [ConnectionMethod.USB, ConnectionMethod.WIFI]
        assert transports[1].device("sim-gridplus-lattice").descriptor.vendor is DeviceVendor.GRIDPLUS
