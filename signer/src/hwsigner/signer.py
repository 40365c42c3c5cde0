"""HardwareSigner: the consumer-facing entry point.

Wires the registry, connection manager, account service, signing
orchestrator and event notifier together from ``Settings`` and exposes the
operations a UI or other collaborator needs. There is no global instance;
create one, ``await start()``, and ``await close()`` when done (or use it as
an async context manager).
"""

from __future__ import annotations

import logging
from pathlib import Path

from hwsigner.accounts.paths import PathRange
from hwsigner.accounts.service import AccountDerivationService
from hwsigner.config import Settings
from hwsigner.connection.manager import ConnectionManager
from hwsigner.devices.registry import DeviceRegistry
from hwsigner.events.journal import EventJournal
from hwsigner.events.notifier import EventNotifier, Subscription
from hwsigner.models import (
    Account,
    Device,
    RequestStatus,
    RequestType,
    SigningPayload,
    SigningRequest,
)
from hwsigner.signing.orchestrator import SigningOrchestrator
from hwsigner.transport.base import TransportAdapter
from hwsigner.transport.loader import AdapterLoader
from hwsigner.transport.simulated import build_demo_transports

logger = logging.getLogger(__name__)

# The journal must keep up with bursts (a disconnect cancelling a long queue).
_JOURNAL_QUEUE_SIZE = 1000


def build_adapters(settings: Settings) -> list[TransportAdapter]:
    """Create one adapter per enabled connection method."""
    methods = list(settings.transport.methods)
    if settings.transport.simulate:
        logger.warning("Using simulated transports -- keys live in process memory")
        return list(build_demo_transports(methods))

    adapters: list[TransportAdapter] = []
    if settings.transport.plugin_dir:
        for adapter in AdapterLoader(Path(settings.transport.plugin_dir)).load_all():
            if adapter.method in methods:
                adapters.append(adapter)
            else:
                logger.info("Transport %s is disabled, ignoring adapter", adapter.method.value)
    if not adapters:
        logger.warning("No transport adapters available; scans will find nothing")
    return adapters


class HardwareSigner:
    """Owns one instance of every core component.

    Parameters
    ----------
    settings:
        Loaded configuration. Defaults apply when ``None``.
    adapters:
        Transport adapters to use instead of building them from settings.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        adapters: list[TransportAdapter] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        if adapters is None:
            adapters = build_adapters(self.settings)
        self.adapters = list(adapters)

        self.registry = DeviceRegistry()
        self.notifier = EventNotifier(max_queue=self.settings.events.subscriber_queue_size)
        self.connections = ConnectionManager(
            self.registry,
            self.notifier,
            self.adapters,
            connect_timeout=self.settings.connection.connect_timeout,
        )
        self.accounts = AccountDerivationService(
            self.connections,
            max_page_size=self.settings.accounts.max_page_size,
            presets=self.settings.accounts.derivation_paths,
        )
        self.signing = SigningOrchestrator(
            self.connections, self.accounts, self.notifier, self.settings.signing
        )
        self.journal: EventJournal | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        path = self.settings.events.journal_path
        if path and self.journal is None:
            self.journal = await EventJournal.open(path)
            self.journal.attach(self.notifier.subscribe(max_queue=_JOURNAL_QUEUE_SIZE))
        logger.info(
            "Hardware signer started with %d transport(s): %s",
            len(self.adapters),
            ", ".join(a.method.value for a in self.adapters) or "none",
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.connections.shutdown()
        await self.signing.close()
        self.notifier.close()
        if self.journal is not None:
            await self.journal.close()
            self.journal = None
        logger.info("Hardware signer stopped")

    async def __aenter__(self) -> HardwareSigner:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def scan(self) -> list[Device]:
        return await self.connections.scan()

    async def connect(self, device_id: str) -> Device:
        return await self.connections.connect(device_id)

    async def disconnect(self, device_id: str) -> None:
        await self.connections.disconnect(device_id)

    def list_devices(self) -> list[Device]:
        return self.registry.list_devices()

    def get_device(self, device_id: str) -> Device:
        return self.registry.require_device(device_id)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def default_range(self) -> PathRange:
        presets = self.settings.accounts.derivation_paths
        base = presets.get("ethereum") or next(iter(presets.values()))
        return PathRange(base_path=base, start=0, count=self.settings.accounts.default_count)

    async def load_accounts(
        self, device_id: str, path_range: PathRange | None = None
    ) -> list[Account]:
        return await self.accounts.load_accounts(device_id, path_range or self.default_range())

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def submit(
        self,
        device_id: str,
        account_path: str,
        payload: bytes | SigningPayload,
        request_type: RequestType = RequestType.TRANSACTION,
        summary: str = "",
    ) -> int:
        if isinstance(payload, bytes):
            payload = SigningPayload(data=payload, summary=summary)
        return self.signing.submit(device_id, account_path, payload, request_type)

    def get_status(self, request_id: int) -> SigningRequest:
        return self.signing.get_status(request_id)

    def cancel(self, request_id: int) -> SigningRequest:
        return self.signing.cancel(request_id)

    def list_requests(
        self, device_id: str | None = None, status: RequestStatus | None = None
    ) -> list[SigningRequest]:
        return self.signing.list_requests(device_id, status)

    async def wait_for(self, request_id: int, timeout: float | None = None) -> SigningRequest:
        return await self.signing.wait_for(request_id, timeout)

    def trim_history(self, keep: int | None = None) -> int:
        return self.signing.trim_history(
            self.settings.signing.history_keep if keep is None else keep
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(
        self, event_types: list[str] | None = None, max_queue: int | None = None
    ) -> Subscription:
        return self.notifier.subscribe(event_types, max_queue)
