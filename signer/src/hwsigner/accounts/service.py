"""Account derivation service.

Derives bounded pages of accounts from a connected, unlocked device and
caches them for the lifetime of the device session. A device can only
process one command at a time, so derivations take the device channel's
lock: a second caller for the same device waits for the first and is then
served from the cache.

A session ending (disconnect, vanish, mid-session lock) drops the device's
cache and interrupts any derivation still waiting on the device; the
interrupted caller gets ``DeviceDisconnected``.
"""

from __future__ import annotations

import asyncio
import logging

from hwsigner.accounts.paths import PathRange
from hwsigner.connection.channel import DeviceChannel
from hwsigner.connection.manager import ConnectionManager
from hwsigner.errors import (
    DeviceDisconnected,
    DeviceLocked,
    DeviceNotReady,
    HardwareSignerError,
    TransportError,
)
from hwsigner.models import Account

logger = logging.getLogger(__name__)


class AccountDerivationService:
    """Per-session account cache in front of the transport's derivation call.

    Parameters
    ----------
    connections:
        Connection manager providing readiness checks and device channels.
    max_page_size:
        Upper bound on accounts derived per call.
    presets:
        Named base paths (``"ethereum"`` -> ``"m/44'/60'/0'/0"``) accepted in
        place of a literal ``PathRange.base_path``.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        max_page_size: int = 20,
        presets: dict[str, str] | None = None,
    ) -> None:
        self._connections = connections
        self._max_page_size = max_page_size
        self._presets = dict(presets or {})
        # device_id -> (session_id, path -> Account)
        self._cache: dict[str, tuple[int, dict[str, Account]]] = {}
        self._inflight: dict[str, set[asyncio.Task[list[Account]]]] = {}
        self._interrupted: set[asyncio.Task[list[Account]]] = set()
        connections.on_session_start(self._on_session_start)
        connections.on_session_end(self._on_session_end)

    @property
    def presets(self) -> dict[str, str]:
        return dict(self._presets)

    def resolve(self, path_range: PathRange) -> PathRange:
        """Expand a preset name and validate the range."""
        base = self._presets.get(path_range.base_path, path_range.base_path)
        resolved = PathRange(base_path=base, start=path_range.start, count=path_range.count)
        resolved.validate(self._max_page_size)
        return resolved

    async def load_accounts(self, device_id: str, path_range: PathRange) -> list[Account]:
        """Return the accounts in *path_range*, deriving what is not cached.

        Raises ``DeviceNotReady`` unless the device is connected and unlocked.
        """
        path_range = self.resolve(path_range)
        _, channel = self._connections.require_ready(device_id)

        task = asyncio.create_task(
            self._derive(device_id, channel, channel.session_id, path_range.paths())
        )
        inflight = self._inflight.setdefault(device_id, set())
        inflight.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._interrupted:
                raise DeviceDisconnected(
                    f"Device {device_id} disconnected during derivation", device_id=device_id
                ) from None
            raise
        finally:
            inflight.discard(task)
            self._interrupted.discard(task)

    async def _derive(
        self, device_id: str, channel: DeviceChannel, session_id: int, paths: list[str]
    ) -> list[Account]:
        async with channel.lock:
            # The session may have changed while we waited for the device.
            _, current = self._connections.require_ready(device_id)
            if current is not channel or channel.session_id != session_id:
                raise DeviceNotReady(f"Session for {device_id} changed", device_id=device_id)

            cached = self._session_cache(device_id, session_id)
            missing = [p for p in paths if p not in cached]
            if missing:
                try:
                    descriptors = await channel.list_accounts(missing)
                except DeviceLocked:
                    self._connections.report_locked(device_id)
                    raise
                except HardwareSignerError:
                    raise
                except Exception as exc:
                    logger.exception("Transport raised unexpectedly deriving on %s", device_id)
                    raise TransportError(str(exc) or type(exc).__name__, device_id=device_id) from exc

                for desc in descriptors:
                    cached[desc.path] = Account(
                        device_id=device_id,
                        path=desc.path,
                        index=desc.index,
                        address=desc.address,
                        public_key=desc.public_key,
                        session_id=session_id,
                    )
                logger.debug("Derived %d accounts on %s", len(descriptors), device_id)

            return [cached[p].model_copy() for p in paths if p in cached]

    def _session_cache(self, device_id: str, session_id: int) -> dict[str, Account]:
        entry = self._cache.get(device_id)
        if entry is None or entry[0] != session_id:
            entry = (session_id, {})
            self._cache[device_id] = entry
        return entry[1]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_account(self, device_id: str, path: str) -> Account | None:
        """Return the account at *path* if it was loaded in the live session."""
        session_id = self._connections.session_id(device_id)
        entry = self._cache.get(device_id)
        if session_id is None or entry is None or entry[0] != session_id:
            return None
        account = entry[1].get(path)
        return account.model_copy() if account is not None else None

    def cached_accounts(self, device_id: str) -> list[Account]:
        session_id = self._connections.session_id(device_id)
        entry = self._cache.get(device_id)
        if session_id is None or entry is None or entry[0] != session_id:
            return []
        return [a.model_copy() for a in sorted(entry[1].values(), key=lambda a: (a.path.rsplit("/", 1)[0], a.index))]

    def update_balance(self, device_id: str, path: str, balance: str) -> Account:
        """Attach a balance fetched by an external collaborator to a cached account."""
        if self.get_account(device_id, path) is None:
            raise DeviceNotReady(
                f"Account {path} is not loaded in the current session of {device_id}",
                device_id=device_id,
            )
        entry = self._cache[device_id][1]
        entry[path] = entry[path].model_copy(update={"balance": balance})
        return entry[path].model_copy()

    # ------------------------------------------------------------------
    # Session listeners
    # ------------------------------------------------------------------

    async def _on_session_start(self, device_id: str, session_id: int) -> None:
        self._cache.pop(device_id, None)

    async def _on_session_end(self, device_id: str, session_id: int) -> None:
        self._cache.pop(device_id, None)
        pending = {t for t in self._inflight.get(device_id, set()) if not t.done()}
        for task in pending:
            self._interrupted.add(task)
            task.cancel()
        if pending:
            await asyncio.wait(pending)
