"""Dynamic discovery of third-party transport adapters.

Vendor transport stacks (HID, WebUSB bridges, Lattice pairing) live outside
the core. ``AdapterLoader`` scans a directory for Python files containing a
concrete ``TransportAdapter`` subclass, imports them, and instantiates the
adapter class. Invalid modules are logged and skipped so one broken adapter
cannot prevent the rest from loading.
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
import sys
from pathlib import Path
from types import ModuleType

from hwsigner.transport.base import TransportAdapter

logger = logging.getLogger(__name__)

_SKIP_NAMES = {"__init__.py"}


class AdapterLoader:
    """Discover and load transport adapters from a directory.

    Parameters
    ----------
    adapter_dir:
        Path to the directory that holds ``*.py`` adapter files.
    """

    def __init__(self, adapter_dir: Path) -> None:
        self._adapter_dir = adapter_dir

    def discover(self) -> list[str]:
        """Return the module names (stems) of candidate adapter files.

        Returns an empty list if the directory does not exist.
        """
        if not self._adapter_dir.is_dir():
            return []

        names: list[str] = []
        for path in sorted(self._adapter_dir.iterdir()):
            if path.is_dir() or path.suffix != ".py" or path.name in _SKIP_NAMES:
                continue
            names.append(path.stem)
        return names

    def load(self, module_name: str) -> TransportAdapter:
        """Import *module_name* from the adapter directory and instantiate it.

        Raises
        ------
        FileNotFoundError
            If the corresponding ``.py`` file does not exist.
        ValueError
            If the module contains no ``TransportAdapter`` subclass.
        """
        file_path = self._adapter_dir / f"{module_name}.py"
        if not file_path.is_file():
            raise FileNotFoundError(f"Adapter file not found: {file_path}")

        module = self._import_file(module_name, file_path)
        cls = self._find_adapter_class(module, module_name)
        return cls()

    def load_all(self) -> list[TransportAdapter]:
        """Discover and load every valid adapter, skipping broken ones."""
        adapters: list[TransportAdapter] = []
        for name in self.discover():
            try:
                adapter = self.load(name)
            except Exception:
                logger.warning("Skipping adapter %r -- failed to load", name, exc_info=True)
                continue
            adapters.append(adapter)
            logger.info("Loaded transport adapter %s (%s)", name, adapter.method.value)
        return adapters

    @staticmethod
    def _import_file(module_name: str, file_path: Path) -> ModuleType:
        qualified = f"_hwsigner_adapter_{module_name}"
        spec = importlib.util.spec_from_file_location(qualified, file_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot create module spec for {file_path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[qualified] = module
        spec.loader.exec_module(module)
        return module

    @staticmethod
    def _find_adapter_class(module: ModuleType, module_name: str) -> type[TransportAdapter]:
        for _attr_name, obj in inspect.getmembers(module, inspect.isclass):
            if (
                issubclass(obj, TransportAdapter)
                and obj is not TransportAdapter
                and not inspect.isabstract(obj)
                and obj.__module__ == module.__name__
            ):
                return obj

        raise ValueError(f"No TransportAdapter subclass found in adapter {module_name!r}")
