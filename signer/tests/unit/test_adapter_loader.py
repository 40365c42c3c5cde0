"""Tests for transport adapter discovery and loading."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from hwsigner.models import ConnectionMethod
from hwsigner.transport.base import TransportAdapter
from hwsigner.transport.loader import AdapterLoader

_VALID_ADAPTER = textwrap.dedent(
    """
    from hwsigner.models import ConnectionMethod
    from hwsigner.transport.base import TransportAdapter


    class BridgeAdapter(TransportAdapter):
        method = ConnectionMethod.WIFI

        async def scan_all(self):
            return []

        async def open(self, device_id):
            raise NotImplementedError

        async def close(self, handle):
            pass

        async def list_accounts(self, handle, paths):
            return []

        async def sign(self, handle, account_path, request_type, payload):
            return b""
    """
)

_NO_ADAPTER = "VALUE = 1\n"
_BROKEN = "import module_that_does_not_exist\n"


@pytest.fixture
def adapter_dir(tmp_path: Path) -> Path:
    d = tmp_path / "adapters"
    d.mkdir()
    (d / "bridge.py").write_text(_VALID_ADAPTER)
    (d / "empty.py").write_text(_NO_ADAPTER)
    (d / "broken.py").write_text(_BROKEN)
    (d / "__init__.py").write_text("")
    (d / "notes.txt").write_text("not python")
    return d


class TestTransportAdapterABC:
    def test_cannot_instantiate_abc(self) -> None:
        with pytest.raises(TypeError):
            TransportAdapter()  # type: ignore[abstract]

    def test_default_method(self) -> None:
        assert TransportAdapter.method is ConnectionMethod.OTHER


class TestAdapterLoader:
    def test_discover(self, adapter_dir: Path) -> None:
        assert AdapterLoader(adapter_dir).discover() == ["bridge", "broken", "empty"]

    def test_discover_missing_dir(self, tmp_path: Path) -> None:
        assert AdapterLoader(tmp_path / "absent").discover() == []

    def test_load(self, adapter_dir: Path) -> None:
        adapter = AdapterLoader(adapter_dir).load("bridge")
        assert isinstance(adapter, TransportAdapter)
        assert adapter.method is ConnectionMethod.WIFI

    def test_load_without_adapter_class(self, adapter_dir: Path) -> None:
        with pytest.raises(ValueError, match="No TransportAdapter subclass"):
            AdapterLoader(adapter_dir).load("empty")

    def test_load_missing_file(self, adapter_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            AdapterLoader(adapter_dir).load("absent")

    def test_load_all_skips_broken(self, adapter_dir: Path) -> None:
        adapters = AdapterLoader(adapter_dir).load_all()
        assert [type(a).__name__ for a in adapters] == ["BridgeAdapter"]
