"""Integration tests for account derivation and the per-session account cache."""

from __future__ import annotations

import asyncio

import pytest

from hwsigner.accounts.paths import PathRange
from hwsigner.errors import DeviceDisconnected, DeviceNotReady, InvalidPathRange, UnknownDevice

ETH_BASE = "m/44'/60'/0'/0"


class TestLoadAccounts:
    @pytest.mark.asyncio
    async def test_requires_connected_device(self, manager, accounts) -> None:
        await manager.scan()
        with pytest.raises(DeviceNotReady):
            await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 5))

    @pytest.mark.asyncio
    async def test_unknown_device(self, accounts) -> None:
        with pytest.raises(UnknownDevice):
            await accounts.load_accounts("nope", PathRange(ETH_BASE, 0, 5))

    @pytest.mark.asyncio
    async def test_loads_requested_page(self, manager, accounts) -> None:
        await manager.scan()
        await manager.connect("ledger-1")

        loaded = await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 3, 4))

        assert [a.path for a in loaded] == [f"{ETH_BASE}/{i}" for i in range(3, 7)]
        assert [a.index for a in loaded] == [3, 4, 5, 6]
        assert all(a.address.startswith("0x") and len(a.address) == 42 for a in loaded)
        assert len({a.address for a in loaded}) == 4
        assert all(a.session_id == manager.session_id("ledger-1") for a in loaded)

    @pytest.mark.asyncio
    async def test_preset_names_resolve(self, manager, accounts) -> None:
        await manager.scan()
        await manager.connect("ledger-1")

        loaded = await accounts.load_accounts(
            "ledger-1", PathRange("bitcoin_native_segwit", 0, 1)
        )

        assert loaded[0].path == "m/84'/0'/0'/0/0"

    @pytest.mark.parametrize(
        "path_range",
        [
            PathRange(ETH_BASE, 0, 0),
            PathRange(ETH_BASE, 0, 21),
            PathRange(ETH_BASE, -1, 5),
            PathRange("44'/60'/0'/0", 0, 5),
            PathRange("m/44'/abc/0'", 0, 5),
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_ranges(self, manager, accounts, path_range) -> None:
        await manager.scan()
        await manager.connect("ledger-1")
        with pytest.raises(InvalidPathRange):
            await accounts.load_accounts("ledger-1", path_range)


class TestAccountCache:
    @pytest.mark.asyncio
    async def test_second_load_is_served_from_cache(self, manager, accounts, transport) -> None:
        await manager.scan()
        await manager.connect("ledger-1")
        first = await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 5))

        second = await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 5))

        assert first == second
        assert len(transport.derive_calls) == 1

    @pytest.mark.asyncio
    async def test_overlapping_range_derives_only_missing(self, manager, accounts, transport) -> None:
        await manager.scan()
        await manager.connect("ledger-1")
        await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 5))

        await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 3, 4))

        assert transport.derive_calls[-1] == ("ledger-1", [f"{ETH_BASE}/5", f"{ETH_BASE}/6"])

    @pytest.mark.asyncio
    async def test_concurrent_loads_serialize(self, manager, accounts, transport) -> None:
        await manager.scan()
        await manager.connect("ledger-1")
        transport.device("ledger-1").derive_delay = 0.02

        a, b = await asyncio.gather(
            accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 3)),
            accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 3)),
        )

        assert a == b
        assert len(transport.derive_calls) == 1
        assert transport.max_concurrency["ledger-1"] == 1

    @pytest.mark.asyncio
    async def test_disconnect_invalidates_cache(self, manager, accounts, transport) -> None:
        await manager.scan()
        await manager.connect("ledger-1")
        before = await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 2))

        await manager.disconnect("ledger-1")
        assert accounts.get_account("ledger-1", before[0].path) is None
        assert accounts.cached_accounts("ledger-1") == []

        await manager.connect("ledger-1")
        assert accounts.cached_accounts("ledger-1") == []
        after = await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 2))

        assert len(transport.derive_calls) == 2
        assert after[0].address == before[0].address
        assert after[0].session_id > before[0].session_id

    @pytest.mark.asyncio
    async def test_disconnect_interrupts_derivation(self, manager, accounts, transport) -> None:
        await manager.scan()
        await manager.connect("ledger-1")
        transport.device("ledger-1").derive_delay = 1.0

        task = asyncio.create_task(accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 5)))
        await asyncio.sleep(0.02)
        await manager.disconnect("ledger-1")

        with pytest.raises(DeviceDisconnected):
            await task
        assert accounts.cached_accounts("ledger-1") == []

    @pytest.mark.asyncio
    async def test_caches_are_per_device(self, manager, accounts) -> None:
        await manager.scan()
        await manager.connect("ledger-1")
        await manager.connect("trezor-1")
        ledger = await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 1))
        trezor = await accounts.load_accounts("trezor-1", PathRange(ETH_BASE, 0, 1))

        await manager.disconnect("ledger-1")

        assert ledger[0].address != trezor[0].address
        assert accounts.get_account("trezor-1", trezor[0].path) == trezor[0]

    @pytest.mark.asyncio
    async def test_update_balance(self, manager, accounts) -> None:
        await manager.scan()
        await manager.connect("ledger-1")
        loaded = await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 1))

        updated = accounts.update_balance("ledger-1", loaded[0].path, "1.25")

        assert updated.balance == "1.25"
        assert accounts.get_account("ledger-1", loaded[0].path).balance == "1.25"
        with pytest.raises(DeviceNotReady):
            accounts.update_balance("ledger-1", f"{ETH_BASE}/9", "0")

    @pytest.mark.asyncio
    async def test_returned_accounts_are_copies(self, manager, accounts) -> None:
        await manager.scan()
        await manager.connect("ledger-1")
        loaded = await accounts.load_accounts("ledger-1", PathRange(ETH_BASE, 0, 1))

        loaded[0].balance = "999"

        assert accounts.get_account("ledger-1", loaded[0].path).balance is None
